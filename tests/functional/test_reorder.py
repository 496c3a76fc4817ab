from backend.main import Task


async def _seed(aclient, n):
    return [(await aclient.post("/todos", json={"title": f"t{i}"})).json()["id"] for i in range(1, n + 1)]


async def _listed_ids(aclient):
    return [t["id"] for t in (await aclient.get("/todos")).json()]


async def test_reorder_puts_first_id_on_top(aclient):
    one, two, three = await _seed(aclient, 3)
    resp = await aclient.put("/todos/reorder", json=[three, one, two])
    assert resp.status_code == 204

    listed = (await aclient.get("/todos")).json()
    assert [t["id"] for t in listed] == [three, one, two]
    assert [t["orderIndex"] for t in listed] == [3, 2, 1]


async def test_reorder_tolerates_unknown_ids(aclient):
    one, two, three = await _seed(aclient, 3)
    resp = await aclient.put("/todos/reorder", json=[two, 999, three, one])
    assert resp.status_code == 204
    assert await _listed_ids(aclient) == [two, three, one]


async def test_reorder_counter_decrements_for_unknown_ids_too(aclient, db_session):
    one, two, three = await _seed(aclient, 3)
    await aclient.put("/todos/reorder", json=[three, 999, one])

    order = {t.id: t.order_index for t in db_session.query(Task).all()}
    # 999 «съедает» значение 2; задача two не упомянута и сохраняет своё
    assert order == {three: 3, one: 1, two: 2}


async def test_reorder_empty_list_is_noop(aclient):
    ids = await _seed(aclient, 2)
    resp = await aclient.put("/todos/reorder", json=[])
    assert resp.status_code == 204
    assert await _listed_ids(aclient) == list(reversed(ids))


async def test_create_after_reorder_lands_on_top(aclient):
    one, two = await _seed(aclient, 2)
    await aclient.put("/todos/reorder", json=[one, two])
    new = (await aclient.post("/todos", json={"title": "newest"})).json()
    assert new["orderIndex"] == 3
    assert await _listed_ids(aclient) == [new["id"], one, two]


async def test_reorder_rejects_non_list_body(aclient):
    resp = await aclient.put("/todos/reorder", json={"ids": [1, 2]})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Validation failed"
