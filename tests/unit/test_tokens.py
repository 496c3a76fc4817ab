import jwt
from datetime import timedelta, datetime, timezone

from backend import main

def test_create_access_token_custom_expiry():
    delta = timedelta(seconds=60)
    token = main.create_access_token({"sub": "alice@example.com"}, expires_delta=delta)
    payload = jwt.decode(token, main.SECRET_KEY, algorithms=[main.ALGORITHM])
    exp = datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
    assert 50 <= (exp - datetime.now(timezone.utc)).total_seconds() <= 61

def test_issue_token_embeds_email_and_role():
    token = main.issue_token("alice@example.com", "USER")
    payload = jwt.decode(token, main.SECRET_KEY, algorithms=[main.ALGORITHM])
    assert payload["sub"] == "alice@example.com"
    assert payload["role"] == "USER"
    assert payload["exp"] > payload["iat"]

def test_decode_token_invalid():
    broken = "abc.def.ghi"
    assert main.decode_token(broken) is None
