"""
Two-stage login.

    Unauthenticated --verify_password--> PasswordVerified --complete_mfa--> FullSession

Both stages are represented by signed, self-contained tokens carrying a
``stage`` claim; the server keeps no session table. A ``password_verified``
token is only good for requesting and consuming a login code for the same
subject, and a ``full_session`` token is the only one protected resources
accept.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from .audit import AuditTrail
from .clock import Clock
from .database import Store
from .errors import ErrorCode, PortalError
from .mailer import Mailer
from .otp import OneTimeCodeManager
from .security import PasswordHasher, TokenSigner

logger = logging.getLogger(__name__)

PASSWORD_VERIFIED = "password_verified"
FULL_SESSION = "full_session"

OTP_EMAIL_SUBJECT = "Your Login OTP - Secure Exam Portal"
OTP_EMAIL_BODY = """<h2>Login Verification</h2>
<p>Your OTP is: <strong style="font-size: 24px;">{code}</strong></p>
<p>This code is valid for {minutes} minutes.</p>
<p>If you didn't request this, please ignore this email.</p>"""


@dataclass(frozen=True)
class Principal:
    id: str
    username: str
    email: str
    role: str


class SessionStageMachine:
    def __init__(
        self,
        store: Store,
        hasher: PasswordHasher,
        signer: TokenSigner,
        codes: OneTimeCodeManager,
        mailer: Mailer,
        audit: AuditTrail,
        clock: Clock,
        temp_token_ttl: timedelta = timedelta(minutes=5),
        session_ttl: timedelta = timedelta(hours=24),
    ):
        self.store = store
        self.hasher = hasher
        self.signer = signer
        self.codes = codes
        self.mailer = mailer
        self.audit = audit
        self.clock = clock
        self.temp_token_ttl = temp_token_ttl
        self.session_ttl = session_ttl

    def verify_password(self, username: str, password: str, ip_address: Optional[str] = None) -> str:
        """Stage 1. Every failure is reported as InvalidCredentials; the detail is for the audit trail only."""
        user = self.store.find_one("user", {"username": username})
        if not user:
            raise PortalError(
                ErrorCode.INVALID_CREDENTIALS, "User not found", action="login", context={"username": username}
            )
        uid = user["_id"]
        if not self.hasher.verify(password, user.get("password_hash")):
            raise PortalError(ErrorCode.INVALID_CREDENTIALS, "Invalid password", subject_id=uid, action="login")
        if not user.get("email_verified"):
            raise PortalError(ErrorCode.INVALID_CREDENTIALS, "Email not verified", subject_id=uid, action="login")
        if not user.get("is_active", True):
            raise PortalError(ErrorCode.INVALID_CREDENTIALS, "Account inactive", subject_id=uid, action="login")

        self.audit.record("login", "success", user_id=uid, details={"stage": PASSWORD_VERIFIED}, ip_address=ip_address)
        return self.signer.sign({"sub": uid, "stage": PASSWORD_VERIFIED}, self.temp_token_ttl)

    def resolve(self, token: str, required_stage: str) -> Dict[str, Any]:
        claims = self.signer.verify(token)
        if claims.get("stage") != required_stage or not claims.get("sub"):
            raise PortalError(
                ErrorCode.INVALID_STAGE,
                f"Expected {required_stage} token, got {claims.get('stage')}",
                subject_id=claims.get("sub"),
            )
        return claims

    def request_code(self, token: str) -> bool:
        """Stage 2a. Returns whether delivery succeeded; issuance stands either way."""
        claims = self.resolve(token, PASSWORD_VERIFIED)
        user = self.store.get_document("user", claims["sub"])
        if not user:
            raise PortalError(ErrorCode.NOT_FOUND, "User not found", subject_id=claims["sub"])
        code = self.codes.issue(user["_id"])
        minutes = int(self.codes.ttl.total_seconds() // 60)
        delivered = self.mailer.send_message(
            user["email"], OTP_EMAIL_SUBJECT, OTP_EMAIL_BODY.format(code=code, minutes=minutes)
        )
        if not delivered:
            logger.warning("Login code for %s was issued but could not be delivered", user["_id"])
        return delivered

    def complete_mfa(self, token: str, code: str, ip_address: Optional[str] = None) -> Tuple[str, Dict[str, Any]]:
        """Stage 2b. Consumes the code and issues the full-session token."""
        claims = self.resolve(token, PASSWORD_VERIFIED)
        uid = claims["sub"]
        user = self.store.get_document("user", uid)
        if not user:
            raise PortalError(ErrorCode.NOT_FOUND, "User not found", subject_id=uid)
        try:
            self.codes.verify(uid, code)
        except PortalError as e:
            e.action = "login"
            raise

        now = self.clock.now()
        self.store.update_document("user", uid, {"last_login": now})
        user["last_login"] = now
        full_token = self.signer.sign(
            {"sub": uid, "username": user["username"], "role": user["role"], "stage": FULL_SESSION},
            self.session_ttl,
        )
        self.audit.record("login", "success", user_id=uid, details={"stage": FULL_SESSION}, ip_address=ip_address)
        return full_token, user

    def authenticate(self, token: str) -> Principal:
        """Resolve a full-session token to the current, active identity."""
        claims = self.resolve(token, FULL_SESSION)
        user = self.store.get_document("user", claims["sub"])
        if not user:
            raise PortalError(ErrorCode.UNAUTHENTICATED, "User not found", subject_id=claims["sub"])
        if not user.get("is_active", True):
            raise PortalError(ErrorCode.UNAUTHENTICATED, "Account is inactive", subject_id=user["_id"])
        return Principal(id=user["_id"], username=user["username"], email=user["email"], role=user["role"])
