import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, Optional

from .audit import AuditTrail
from .clock import Clock, as_utc
from .database import Store, strip_fields
from .errors import ErrorCode, PortalError
from .mailer import Mailer
from .schemas import RegisterRequest, User
from .security import PASSWORD_RULE_MESSAGE, PasswordHasher, validate_password

logger = logging.getLogger(__name__)

PRIVATE_FIELDS = ("password_hash", "email_verification_token", "email_verification_expires")

VERIFY_EMAIL_SUBJECT = "Verify Your Email - Secure Exam Portal"
VERIFY_EMAIL_BODY = """<h2>Welcome to Secure Exam Portal!</h2>
<p>Please click the link below to verify your email:</p>
<a href="{link}">{link}</a>
<p>This link will expire in {hours} hours.</p>"""


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return strip_fields(user, PRIVATE_FIELDS)


class AccountService:
    def __init__(
        self,
        store: Store,
        hasher: PasswordHasher,
        mailer: Mailer,
        audit: AuditTrail,
        clock: Clock,
        frontend_url: str,
        verification_ttl: timedelta = timedelta(hours=24),
        allow_admin_signup: bool = False,
    ):
        self.store = store
        self.hasher = hasher
        self.mailer = mailer
        self.audit = audit
        self.clock = clock
        self.frontend_url = frontend_url.rstrip("/")
        self.verification_ttl = verification_ttl
        self.allow_admin_signup = allow_admin_signup

    @staticmethod
    def _rejected(code: ErrorCode, detail: str, username: str) -> PortalError:
        return PortalError(code, detail, action="register", context={"username": username})

    def register(self, payload: RegisterRequest, ip_address: Optional[str] = None) -> str:
        if not validate_password(payload.password):
            raise self._rejected(ErrorCode.INVALID_INPUT, PASSWORD_RULE_MESSAGE, payload.username)
        role = payload.role or "student"
        if role == "admin" and not self.allow_admin_signup:
            raise self._rejected(ErrorCode.INVALID_INPUT, "Admin accounts cannot be self-registered", payload.username)
        if self.store.find_one("user", {"username": payload.username}) or self.store.find_one(
            "user", {"email": payload.email}
        ):
            raise self._rejected(ErrorCode.CONFLICT, "Username or email already exists", payload.username)

        now = self.clock.now()
        verification_token = secrets.token_hex(32)
        try:
            uid = self.store.create_document(
                "user",
                User(
                    username=payload.username,
                    email=payload.email,
                    password_hash=self.hasher.hash(payload.password),
                    role=role,
                    email_verification_token=verification_token,
                    email_verification_expires=now + self.verification_ttl,
                    created_at=now,
                ),
            )
        except PortalError as e:
            # unique index lost a race with a concurrent registration
            raise self._rejected(e.code, "Username or email already exists", payload.username)

        link = f"{self.frontend_url}/verify-email/{verification_token}"
        hours = int(self.verification_ttl.total_seconds() // 3600)
        if not self.mailer.send_message(payload.email, VERIFY_EMAIL_SUBJECT, VERIFY_EMAIL_BODY.format(link=link, hours=hours)):
            logger.warning("Verification email for %s could not be delivered", uid)

        self.audit.record("register", "success", user_id=uid, ip_address=ip_address)
        return uid

    def verify_email(self, token: str) -> str:
        user = self.store.find_one("user", {"email_verification_token": token}) if token else None
        expires = user.get("email_verification_expires") if user else None
        if not user or not expires or self.clock.now() > as_utc(expires):
            raise PortalError(ErrorCode.INVALID_INPUT, "Invalid or expired token")
        self.store.update_document(
            "user",
            user["_id"],
            {"email_verified": True, "email_verification_token": None, "email_verification_expires": None},
        )
        return user["_id"]

    def profile(self, user_id: str) -> Dict[str, Any]:
        user = self.store.get_document("user", user_id)
        if not user:
            raise PortalError(ErrorCode.NOT_FOUND, "User not found")
        return public_user(user)
