from fastapi import FastAPI, Depends, Body, Path, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy import create_engine, Column, Integer, String, Boolean, Date, desc, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy import event
from passlib.context import CryptContext
from datetime import date, datetime, timedelta, timezone
from http import HTTPStatus
from pydantic import BaseModel, conint
from typing import Dict, Iterable, List, Optional, Tuple
import jwt
import logging
import logging.config
import re

# -----------------------------
# Настройки приложения и БД
# -----------------------------
import os
from dotenv import load_dotenv

load_dotenv() # Загружаем переменные из .env файла


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    if os.getenv("POSTGRES_HOST"):
        return (
            f"postgresql+psycopg2://{os.getenv('POSTGRES_USER')}:{os.getenv('POSTGRES_PASSWORD')}"
            f"@{os.getenv('POSTGRES_HOST')}:{os.getenv('POSTGRES_PORT', '5432')}/{os.getenv('POSTGRES_DB')}"
        )
    return "sqlite:///./todo.db"


DATABASE_URL = _database_url()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:5174").split(",")
    if origin.strip()
]

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

TITLE_MAX_LENGTH = 100
PASSWORD_MIN_LENGTH = 6
DEFAULT_ROLE = "USER"
# Границы BIGINT: больше драйвер БД не примет
ID_MIN = -2**63
ID_MAX = 2**63 - 1

# -----------------------------
# Логирование
# -----------------------------
logger = logging.getLogger("todo_backend")


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            }
        },
        "handlers": {
            "default": {"class": "logging.StreamHandler", "formatter": "standard"},
        },
        "loggers": {
            "todo_backend": {"handlers": ["default"], "level": level, "propagate": False},
        },
    })

# -----------------------------
# Модели БД
# -----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(320), unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    role = Column(String(32), nullable=False, default=DEFAULT_ROLE)

class Task(Base):
    __tablename__ = "tasks"
    # id никогда не переиспользуется, даже после удаления последней задачи
    __table_args__ = {"sqlite_autoincrement": True}
    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(TITLE_MAX_LENGTH), nullable=False)
    completed = Column(Boolean, default=False)
    # Чем больше значение, тем выше задача в списке. У старых строк может быть NULL
    order_index = Column(Integer, index=True)
    due_date = Column(Date)

@event.listens_for(Task, "init", propagate=True)
def _task_init(target, args, kwargs):
    if "completed" not in kwargs:
        target.completed = False

# -----------------------------
# Эффективные значения (NULL -> значение по умолчанию)
# -----------------------------
def effective_order(task: Task) -> int:
    """Ключ сортировки задачи: order_index, а если его нет, то id."""
    return task.order_index if task.order_index is not None else task.id

def effective_order_expr():
    """SQL-версия effective_order: coalesce(order_index, id)."""
    return func.coalesce(Task.order_index, Task.id)

def effective_completed(task: Task) -> bool:
    return bool(task.completed)

# -----------------------------
# Pydantic-схемы
# -----------------------------
class TodoRequest(BaseModel):
    title: Optional[str] = None
    dueDate: Optional[date] = None

class TodoOut(BaseModel):
    id: int
    title: str
    completed: bool
    orderIndex: Optional[int] = None
    dueDate: Optional[date] = None

class Credentials(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None

class TokenOut(BaseModel):
    token: str

class MeOut(BaseModel):
    email: str
    role: str

def to_todo_out(task: Task) -> TodoOut:
    return TodoOut(
        id=task.id,
        title=task.title,
        completed=effective_completed(task),
        orderIndex=task.order_index,
        dueDate=task.due_date,
    )

# -----------------------------
# Ошибки и их HTTP-статусы
# -----------------------------
class AppError(Exception):
    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors

class ValidationError(AppError):
    def __init__(self, errors: Dict[str, str]):
        super().__init__("Validation failed", errors)

class NotFoundError(AppError):
    pass

class ConflictError(AppError):
    pass

class UnauthorizedError(AppError):
    pass

ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    UnauthorizedError: status.HTTP_401_UNAUTHORIZED,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
}

INVALID_CREDENTIALS = "Invalid email or password"
INVALID_TOKEN = "Invalid or expired token"

def status_for(exc: Exception) -> int:
    for kind in type(exc).__mro__:
        if kind in ERROR_STATUS:
            return ERROR_STATUS[kind]
    return status.HTTP_500_INTERNAL_SERVER_ERROR

def error_body(status_code: int, message: str, errors: Optional[Dict[str, str]] = None) -> dict:
    body = {
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "status": status_code,
        "error": HTTPStatus(status_code).phrase,
        "message": message,
    }
    if errors is not None:
        body["errors"] = errors
    return body

def first_messages(pairs: Iterable[Tuple[str, str]]) -> Dict[str, str]:
    """Собирает {поле: сообщение}; при нескольких ошибках поля побеждает первая."""
    errors: Dict[str, str] = {}
    for field, message in pairs:
        errors.setdefault(field, message)
    return errors

# -----------------------------
# Валидация входных данных
# -----------------------------
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+$")

def validate_title(title: Optional[str]) -> Dict[str, str]:
    if title is None or not title.strip():
        return {"title": "Title must not be blank"}
    if len(title) > TITLE_MAX_LENGTH:
        return {"title": f"Title must be at most {TITLE_MAX_LENGTH} characters"}
    return {}

def validate_credentials(email: Optional[str], password: Optional[str], min_password_length: int = 0) -> Dict[str, str]:
    problems = []
    if email is None or not email.strip():
        problems.append(("email", "Email must not be blank"))
    elif not EMAIL_PATTERN.match(email):
        problems.append(("email", "Email must be a well-formed email address"))
    if password is None or not password.strip():
        problems.append(("password", "Password must not be blank"))
    elif len(password) < min_password_length:
        problems.append(("password", f"Password must be at least {min_password_length} characters"))
    return first_messages(problems)

def ensure_valid(errors: Dict[str, str]) -> None:
    if errors:
        raise ValidationError(errors)

# -----------------------------
# Безопасность и JWT
# -----------------------------
SECRET_KEY = os.getenv("SECRET_KEY", "change-me-todo-backend-development-secret")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)

def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)

def get_password_hash(password):
    return pwd_context.hash(password)

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    if expires_delta:
        expire = now + expires_delta
    else:
        expire = now + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"iat": now, "exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

def issue_token(email: str, role: str) -> str:
    return create_access_token({"sub": email, "role": role})

def decode_token(token: str):
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        return payload
    except jwt.PyJWTError:
        return None

# -----------------------------
# Хранилища (поверх сессии SQLAlchemy)
# -----------------------------
class TaskStore:
    def __init__(self, db: Session):
        self.db = db

    def find_all_ordered(self) -> List[Task]:
        return self.db.query(Task).order_by(desc(effective_order_expr()), desc(Task.id)).all()

    def find_max_order(self) -> int:
        return self.db.query(func.coalesce(func.max(effective_order_expr()), 0)).scalar()

    def find_many_by_ids(self, ids: Iterable[int]) -> List[Task]:
        wanted = list(set(ids))
        if not wanted:
            return []
        return self.db.query(Task).filter(Task.id.in_(wanted)).all()

    def get(self, task_id: int) -> Optional[Task]:
        return self.db.get(Task, task_id)

    def save(self, task: Task) -> Task:
        self.db.add(task)
        self.db.commit()
        self.db.refresh(task)
        return task

    def save_batch(self, tasks: List[Task]) -> None:
        # Одна транзакция: частично применённый reorder не виден
        self.db.add_all(tasks)
        self.db.commit()

    def delete_by_id(self, task_id: int) -> bool:
        deleted = self.db.query(Task).filter(Task.id == task_id).delete()
        self.db.commit()
        return deleted > 0

class UserStore:
    def __init__(self, db: Session):
        self.db = db

    def exists_by_email(self, email: str) -> bool:
        return self.db.query(User.id).filter(User.email == email).first() is not None

    def find_by_email(self, email: str) -> Optional[User]:
        return self.db.query(User).filter(User.email == email).first()

    def save(self, user: User) -> User:
        self.db.add(user)
        try:
            self.db.commit()
        except IntegrityError:
            # Параллельная регистрация успела раньше: сработал уникальный индекс
            self.db.rollback()
            raise ConflictError(f"Email already registered: {user.email}")
        self.db.refresh(user)
        return user

# -----------------------------
# Зависимости
# -----------------------------
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def get_task_store(db: Session = Depends(get_db)) -> TaskStore:
    return TaskStore(db)

def get_user_store(db: Session = Depends(get_db)) -> UserStore:
    return UserStore(db)

def get_current_user(token: Optional[str] = Depends(oauth2_scheme), users: UserStore = Depends(get_user_store)):
    if token is None:
        raise UnauthorizedError(INVALID_TOKEN)
    payload = decode_token(token)
    if payload is None:
        raise UnauthorizedError(INVALID_TOKEN)
    email = payload.get("sub")
    if email is None:
        raise UnauthorizedError(INVALID_TOKEN)
    user = users.find_by_email(email)
    if user is None:
        raise UnauthorizedError(INVALID_TOKEN)
    return user

# -----------------------------
# Инициализация приложения
# -----------------------------
app = FastAPI(
    title="Todo API",
    version="1.0.0",
    description="REST API для списка задач с ручной сортировкой и JWT-аутентификацией.",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
def startup():
    configure_logging()
    # Автоматическая инициализация таблиц
    Base.metadata.create_all(bind=engine)
    logger.info("Таблицы готовы, база: %s", engine.url.render_as_string(hide_password=True))

def _field_name(loc) -> str:
    names = [str(part) for part in loc if part not in ("body", "path", "query", "header")]
    if names:
        return ".".join(names)
    return str(loc[0]) if loc else "request"

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    status_code = status_for(exc)
    return JSONResponse(status_code=status_code, content=error_body(status_code, exc.message, exc.errors))

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = first_messages((_field_name(err["loc"]), err["msg"]) for err in exc.errors())
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body(status.HTTP_400_BAD_REQUEST, "Validation failed", errors),
    )

def _internal_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Необработанная ошибка: %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(status.HTTP_500_INTERNAL_SERVER_ERROR, "Unexpected server error"),
    )

# Обрабатывается внутри CORSMiddleware, поэтому ответ получает CORS-заголовки
@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    return _internal_error(request, exc)

# Всё остальное ловит ServerErrorMiddleware снаружи CORS-слоя
@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    return _internal_error(request, exc)

# -----------------------------
# Эндпоинты аутентификации
# -----------------------------
@app.post("/auth/register", response_model=TokenOut, status_code=status.HTTP_201_CREATED)
def register(payload: Credentials, users: UserStore = Depends(get_user_store)):
    ensure_valid(validate_credentials(payload.email, payload.password, PASSWORD_MIN_LENGTH))
    if users.exists_by_email(payload.email):
        logger.warning("Регистрация отклонена: email уже занят")
        raise ConflictError(f"Email already registered: {payload.email}")
    user = users.save(User(
        email=payload.email,
        hashed_password=get_password_hash(payload.password),
        role=DEFAULT_ROLE,
    ))
    logger.info("Зарегистрирован пользователь id=%s", user.id)
    return TokenOut(token=issue_token(user.email, user.role))

@app.post("/auth/login", response_model=TokenOut)
def login(payload: Credentials, users: UserStore = Depends(get_user_store)):
    ensure_valid(validate_credentials(payload.email, payload.password))
    user = users.find_by_email(payload.email)
    if user is None:
        # Тратим столько же времени, сколько на проверку настоящего хеша
        pwd_context.dummy_verify()
    if user is None or not verify_password(payload.password, user.hashed_password):
        logger.warning("Неудачная попытка входа")
        raise UnauthorizedError(INVALID_CREDENTIALS)
    return TokenOut(token=issue_token(user.email, user.role))

@app.get("/auth/me", response_model=MeOut)
def me(current_user: User = Depends(get_current_user)):
    return MeOut(email=current_user.email, role=current_user.role)

# -----------------------------
# Задачи
# -----------------------------
@app.get("/todos", response_model=List[TodoOut])
def list_todos(store: TaskStore = Depends(get_task_store)):
    return [to_todo_out(task) for task in store.find_all_ordered()]

@app.post("/todos", response_model=TodoOut, status_code=status.HTTP_201_CREATED)
def create_todo(payload: TodoRequest, store: TaskStore = Depends(get_task_store)):
    ensure_valid(validate_title(payload.title))
    task = Task(
        title=payload.title,
        completed=False,
        due_date=payload.dueDate,
        order_index=store.find_max_order() + 1,
    )
    store.save(task)
    logger.info("Создана задача id=%s, ключ сортировки %s", task.id, effective_order(task))
    return to_todo_out(task)

# Объявлен раньше /todos/{task_id}, иначе "reorder" попадёт в task_id
@app.put("/todos/reorder", status_code=status.HTTP_204_NO_CONTENT)
def reorder_todos(ids: List[conint(ge=ID_MIN, le=ID_MAX)] = Body(...), store: TaskStore = Depends(get_task_store)):
    """
    ids приходят в порядке отображения: первый id должен оказаться наверху.
    Счётчик стартует с len(ids) и уменьшается на каждом элементе входа,
    даже если задачи с таким id нет. Неизвестные id просто пропускаются.
    """
    by_id = {task.id: task for task in store.find_many_by_ids(ids)}
    order = len(ids)
    for task_id in ids:
        task = by_id.get(task_id)
        if task is not None:
            task.order_index = order
        order -= 1
    store.save_batch(list(by_id.values()))
    logger.info("Пересортировка: получено %d id, найдено %d задач", len(ids), len(by_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)

@app.delete("/todos/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_todo(task_id: int = Path(..., ge=ID_MIN, le=ID_MAX), store: TaskStore = Depends(get_task_store)):
    if store.delete_by_id(task_id):
        logger.info("Удалена задача id=%s", task_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

@app.put("/todos/{task_id}", response_model=TodoOut)
def toggle_todo(task_id: int = Path(..., ge=ID_MIN, le=ID_MAX), store: TaskStore = Depends(get_task_store)):
    task = store.get(task_id)
    if task is None:
        raise NotFoundError(f"Todo not found: {task_id}")
    task.completed = not effective_completed(task)
    return to_todo_out(store.save(task))

@app.put("/todos/{task_id}/title", response_model=TodoOut)
def rename_todo(payload: TodoRequest, task_id: int = Path(..., ge=ID_MIN, le=ID_MAX), store: TaskStore = Depends(get_task_store)):
    ensure_valid(validate_title(payload.title))
    task = store.get(task_id)
    if task is None:
        raise NotFoundError(f"Todo not found: {task_id}")
    task.title = payload.title
    # dueDate заменяется всегда: отсутствие даты в запросе её очищает
    task.due_date = payload.dueDate
    return to_todo_out(store.save(task))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("backend.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
