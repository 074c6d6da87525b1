import logging
from typing import Optional

from passlib.context import CryptContext

from config import YamlConfig
from db import ConflictError, UserRepository

logger = logging.getLogger(__name__)

pwd_ctx = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

SESSION_KEY = "session_user_id"
MIN_PASSWORD_LENGTH = 6


class AuthError(ValueError):
    """User-facing authentication failure."""


class Session:
    """The signed-in user, passed explicitly to code that needs it."""

    def __init__(self, user: Optional[dict] = None) -> None:
        self.user = user

    @property
    def is_logged_in(self) -> bool:
        return self.user is not None

    @property
    def user_id(self) -> Optional[str]:
        return self.user["id"] if self.user else None


class AuthService:
    """Validate credentials and manage sessions on top of :class:`UserRepository`."""

    def __init__(self, users: UserRepository, config: YamlConfig | None = None) -> None:
        self.users = users
        self.config = config

    @staticmethod
    def hash_password(password: str) -> str:
        return pwd_ctx.hash(password)

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        return pwd_ctx.verify(password, password_hash)

    def sign_up(self, name: str, email: str, password: str) -> Session:
        clean_name = name.strip()
        clean_email = email.strip().lower()
        if not clean_name:
            raise AuthError("Please enter your name.")
        if not clean_email:
            raise AuthError("Please enter your email.")
        if "@" not in clean_email or "." not in clean_email:
            raise AuthError("Please enter a valid email address.")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise AuthError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
            )
        try:
            user = self.users.create(clean_name, clean_email, self.hash_password(password))
        except ConflictError as exc:
            logger.info("sign up rejected for existing email %s", clean_email)
            raise AuthError("An account with this email already exists.") from exc
        return self._start(user)

    def log_in(self, email: str, password: str) -> Session:
        clean_email = email.strip().lower()
        if not clean_email:
            raise AuthError("Please enter your email.")
        user = self.users.fetch_by_email(clean_email)
        if user is None or not self.verify_password(password, user["password_hash"]):
            raise AuthError("Invalid email or password.")
        if pwd_ctx.needs_update(user["password_hash"]):
            self.users.update_password_hash(user["id"], self.hash_password(password))
        return self._start(user)

    def log_out(self, session: Session) -> None:
        session.user = None
        if self.config is not None:
            self.config.update(**{SESSION_KEY: None})

    def restore_session(self) -> Session:
        """Session for the user recorded in settings, if that user still exists."""
        if self.config is None:
            return Session()
        user_id = self.config.get(SESSION_KEY)
        if not user_id:
            return Session()
        return Session(self.users.fetch(str(user_id)))

    def _start(self, user: dict) -> Session:
        if self.config is not None:
            self.config.update(**{SESSION_KEY: user["id"]})
        return Session(user)
