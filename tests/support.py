import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from exam_portal.clock import Clock
from exam_portal.mailer import Mailer

PASSWORD = "Passw0rd!"
ENCRYPTION_KEY = "00112233445566778899aabbccddeeff" * 2
START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

OTP_PATTERN = re.compile(r"<strong[^>]*>(\d{6})</strong>")
VERIFY_LINK_PATTERN = re.compile(r"/verify-email/([0-9a-f]{64})")


class FrozenClock(Clock):
    def __init__(self, now: datetime = START):
        self._now = now

    def now(self):
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value

    def advance(self, **kwargs) -> None:
        self._now += timedelta(**kwargs)


class RecordingMailer(Mailer):
    def __init__(self):
        self.messages: List[Tuple[str, str, str]] = []
        self.failing = False

    def send_message(self, to_address, subject, body):
        self.messages.append((to_address, subject, body))
        return not self.failing

    def _last_match(self, to_address: str, pattern) -> Optional[str]:
        for to, _, body in reversed(self.messages):
            if to == to_address:
                match = pattern.search(body)
                if match:
                    return match.group(1)
        return None

    def last_code(self, to_address: str) -> Optional[str]:
        return self._last_match(to_address, OTP_PATTERN)

    def last_verification_token(self, to_address: str) -> Optional[str]:
        return self._last_match(to_address, VERIFY_LINK_PATTERN)


@dataclass
class Account:
    id: str
    username: str
    email: str
    role: str
    token: str = ""
    headers: Dict[str, str] = field(default_factory=dict)


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


def mcq(text: str, correct: str = "A", marks: float = 1) -> Dict:
    return {
        "questionText": text,
        "questionType": "multiple_choice",
        "options": ["A", "B", "C", "D"],
        "correctAnswer": correct,
        "marks": marks,
    }


def essay(text: str, marks: float = 10) -> Dict:
    return {"questionText": text, "questionType": "essay", "marks": marks}
