import re
from datetime import timedelta
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from .clock import Clock
from .errors import ErrorCode, PortalError

PASSWORD_RULE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$")
PASSWORD_RULE_MESSAGE = (
    "Password must be at least 8 characters with uppercase, lowercase, number, and special character"
)


def validate_password(password: str) -> bool:
    return bool(PASSWORD_RULE.match(password or ""))


class PasswordHasher:
    """bcrypt hashing for passwords and one-time codes."""

    def __init__(self, rounds: int = 12):
        self.pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)

    def hash(self, secret: str) -> str:
        return self.pwd_context.hash(secret)

    def verify(self, secret: str, hashed: Optional[str]) -> bool:
        if not secret or not hashed:
            return False
        try:
            return self.pwd_context.verify(secret, hashed)
        except ValueError:
            # unrecognised or corrupted hash
            return False


class TokenSigner:
    """HS256 JWT signing with expiry checked against the injected clock."""

    def __init__(self, secret_key: str, algorithm: str, clock: Clock):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.clock = clock

    def sign(self, claims: Dict[str, Any], ttl: timedelta) -> str:
        to_encode = claims.copy()
        now = self.clock.now()
        to_encode.update({"iat": int(now.timestamp()), "exp": int((now + ttl).timestamp())})
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def verify(self, token: str) -> Dict[str, Any]:
        try:
            payload = jwt.decode(
                token, self.secret_key, algorithms=[self.algorithm], options={"verify_exp": False}
            )
        except JWTError:
            raise PortalError(ErrorCode.UNAUTHENTICATED, "Invalid token")
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)):
            raise PortalError(ErrorCode.UNAUTHENTICATED, "Token has no expiry")
        if self.clock.now().timestamp() > exp:
            raise PortalError(ErrorCode.STALE_TOKEN, "Token expired", subject_id=payload.get("sub"))
        return payload
