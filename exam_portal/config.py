import os
from typing import List, Optional

from pydantic import BaseModel

from .errors import ErrorCode, PortalError


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    # Security settings
    secret_key: str = ""
    jwt_algorithm: str = "HS256"
    encryption_key: str = ""
    temp_token_expire_minutes: int = 5
    access_token_expire_hours: int = 24
    otp_expire_minutes: int = 5
    email_verification_expire_hours: int = 24
    exam_grace_minutes: int = 5
    bcrypt_rounds: int = 12
    allow_admin_signup: bool = False
    verify_content_hash: bool = False

    # Storage
    database_url: Optional[str] = None
    database_name: str = "exam_portal"

    # Delivery
    frontend_url: str = "http://localhost:5173"
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    email_from: str = "no-reply@exam-portal.local"

    cors_origins: List[str] = ["http://localhost:5173"]
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS")
        return cls(
            secret_key=os.getenv("SECRET_KEY", ""),
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            encryption_key=os.getenv("ENCRYPTION_KEY", ""),
            temp_token_expire_minutes=int(os.getenv("TEMP_TOKEN_EXPIRE_MINUTES", 5)),
            access_token_expire_hours=int(os.getenv("ACCESS_TOKEN_EXPIRE_HOURS", 24)),
            otp_expire_minutes=int(os.getenv("OTP_EXPIRE_MINUTES", 5)),
            email_verification_expire_hours=int(os.getenv("EMAIL_VERIFICATION_EXPIRE_HOURS", 24)),
            exam_grace_minutes=int(os.getenv("EXAM_GRACE_MINUTES", 5)),
            bcrypt_rounds=int(os.getenv("BCRYPT_ROUNDS", 12)),
            allow_admin_signup=_env_bool("ALLOW_ADMIN_SIGNUP"),
            verify_content_hash=_env_bool("VERIFY_CONTENT_HASH"),
            database_url=os.getenv("DATABASE_URL") or None,
            database_name=os.getenv("DATABASE_NAME", "exam_portal"),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:5173"),
            smtp_host=os.getenv("SMTP_HOST") or None,
            smtp_port=int(os.getenv("SMTP_PORT", 587)),
            smtp_user=os.getenv("SMTP_USER") or None,
            smtp_password=os.getenv("SMTP_PASSWORD") or None,
            email_from=os.getenv("EMAIL_FROM", "no-reply@exam-portal.local"),
            cors_origins=[o.strip() for o in origins.split(",")] if origins else ["http://localhost:5173"],
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    def check(self) -> None:
        """Fail fast on configuration the service cannot run without."""
        if not self.secret_key:
            raise PortalError(ErrorCode.CONFIGURATION, "SECRET_KEY not set in environment")
        if not self.encryption_key:
            raise PortalError(ErrorCode.CONFIGURATION, "ENCRYPTION_KEY not set in environment")
