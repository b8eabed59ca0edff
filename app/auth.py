import datetime
import logging
import os

from dotenv import load_dotenv
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app import models
from app.errors import AuthError, UpstreamError, ValidationError

load_dotenv()

LOG = logging.getLogger(__name__)

SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def _create_token(data: dict, token_type: str, expires_delta: datetime.timedelta) -> str:
    to_encode = dict(data)
    now = datetime.datetime.now(datetime.timezone.utc)
    to_encode.update({"exp": now + expires_delta, "iat": now, "type": token_type})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def create_access_token(data: dict, expires_delta: datetime.timedelta | None = None) -> str:
    return _create_token(data, "access", expires_delta or datetime.timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))


def create_refresh_token(data: dict, expires_delta: datetime.timedelta | None = None) -> str:
    return _create_token(data, "refresh", expires_delta or datetime.timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))


def decode_token(token: str, expected_type: str = "access") -> dict:
    """Decode and check a token; any problem is an AuthError."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        raise AuthError("Unauthorized: Invalid token") from e
    if payload.get("type") != expected_type or not payload.get("sub"):
        raise AuthError("Unauthorized: Invalid token")
    return payload


def _issue_pair(user: models.User) -> tuple[str, str]:
    claims = {"sub": user.id, "email": user.email}
    return create_access_token(claims), create_refresh_token(claims)


class IdentityProvider:
    """Users, password checks and token issuance over the relational store."""

    def __init__(self, db: Session):
        self.db = db

    def register(self, email: str, password: str, name: str) -> models.User:
        email = email.lower()
        try:
            if self.db.query(models.User).filter(models.User.email == email).first():
                raise ValidationError("Email already registered")
            user = models.User(email=email, name=name, hashed_password=get_password_hash(password))
            self.db.add(user)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ValidationError("Email already registered") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise UpstreamError(str(e)) from e
        self.db.refresh(user)
        LOG.info("registered user %s", user.id)
        return user

    def login(self, email: str, password: str) -> tuple[models.User, str, str]:
        user = self.db.query(models.User).filter(models.User.email == email.lower()).first()
        if not user or not verify_password(password, user.hashed_password):
            raise AuthError("Invalid credentials")
        access, refresh = _issue_pair(user)
        return user, access, refresh

    def refresh(self, refresh_token: str) -> tuple[models.User, str, str]:
        payload = decode_token(refresh_token, expected_type="refresh")
        user = self.db.get(models.User, payload["sub"])
        if user is None:
            raise AuthError("Unauthorized: Invalid token")
        access, refresh = _issue_pair(user)
        return user, access, refresh

    def verify(self, token: str) -> models.User:
        payload = decode_token(token, expected_type="access")
        user = self.db.get(models.User, payload["sub"])
        if user is None:
            raise AuthError("Unauthorized: Invalid token")
        return user
