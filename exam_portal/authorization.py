"""
Contextual authorization.

A request is checked in two steps:

1. the static role x resource matrix (no I/O; admin is always allowed);
2. for the resource/action pairs that need it, and only when a resource id
   is present, a dynamic policy over the stored records: enrollment and the
   exam window for students, ownership for instructors.

A denial carries the most specific reason code for the audit trail; the
client always sees the same 403.
"""

from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from .clock import Clock, as_utc
from .database import Store
from .errors import ErrorCode, PortalError
from .sessions import Principal

PERMISSIONS: Dict[str, Dict[str, List[str]]] = {
    "exam": {
        "student": ["view"],
        "instructor": ["create", "view", "edit", "delete"],
        "admin": ["create", "view", "edit", "delete"],
    },
    "submission": {
        "student": ["create", "view"],
        "instructor": ["view", "grade"],
        "admin": ["view", "delete"],
    },
    "results": {
        "student": ["view"],
        "instructor": ["view", "edit"],
        "admin": ["view", "edit", "delete"],
    },
    "users": {
        "student": ["view"],
        "instructor": ["view"],
        "admin": ["create", "view", "edit", "delete"],
    },
    "settings": {
        "student": [],
        "instructor": ["view"],
        "admin": ["view", "edit"],
    },
}

ACTIVE_ENROLLMENT = ("enrolled", "completed")

Context = Dict[str, Any]


def is_allowed(role: str, resource: str, action: str) -> bool:
    if role == "admin":
        return True
    return action in PERMISSIONS.get(resource, {}).get(role, [])


class AuthorizationEngine:
    def __init__(self, store: Store, clock: Clock, grace: timedelta = timedelta(minutes=5)):
        self.store = store
        self.clock = clock
        self.grace = grace
        self._policies: Dict[Tuple[str, str], Callable[[Principal, str, str, str], Context]] = {
            ("exam", "view"): self._exam_policy,
            ("exam", "edit"): self._exam_policy,
            ("exam", "delete"): self._exam_policy,
            ("submission", "view"): self._submission_policy,
            ("submission", "grade"): self._submission_policy,
            ("results", "view"): self._result_policy,
        }

    def authorize(self, principal: Principal, resource: str, action: str, resource_id: Optional[str] = None) -> Context:
        """Raise a PortalError unless ``principal`` may perform ``action``.

        Returns the records loaded while evaluating the dynamic policy so the
        caller does not need to fetch them again.
        """
        if not is_allowed(principal.role, resource, action):
            raise self.deny(ErrorCode.FORBIDDEN, principal, resource, action, resource_id)
        policy = self._policies.get((resource, action))
        if policy is None or not resource_id:
            return {}
        return policy(principal, resource, action, resource_id)

    def require_role(self, principal: Principal, *roles: str) -> None:
        if principal.role not in roles:
            raise PortalError(
                ErrorCode.FORBIDDEN,
                f"Required roles: {', '.join(roles)}",
                subject_id=principal.id,
                action="require_role",
            )

    def exam_is_open(self, exam: Dict[str, Any]) -> bool:
        """True within [startTime, endTime + grace]."""
        now = self.clock.now()
        return as_utc(exam["start_time"]) <= now <= as_utc(exam["end_time"]) + self.grace

    def exam_has_ended(self, exam: Dict[str, Any]) -> bool:
        return self.clock.now() >= as_utc(exam["end_time"])

    def owns_exam(self, principal: Principal, exam: Dict[str, Any]) -> bool:
        return principal.role == "admin" or exam.get("instructor_id") == principal.id

    # ---------------------- Policies ----------------------
    def deny(
        self,
        code: ErrorCode,
        principal: Principal,
        resource: str,
        action: str,
        resource_id: Optional[str],
        detail: Optional[str] = None,
    ) -> PortalError:
        return PortalError(
            code,
            detail or f"{principal.role} may not {action} {resource}",
            subject_id=principal.id,
            action=f"{resource}:{action}",
            context={"resource_type": resource, "resource_id": resource_id},
        )

    def _load(self, collection: str, doc_id: str, label: str) -> Dict[str, Any]:
        doc = self.store.get_document(collection, doc_id)
        if not doc:
            raise PortalError(ErrorCode.NOT_FOUND, f"{label} not found")
        return doc

    def _exam_policy(self, principal: Principal, resource: str, action: str, exam_id: str) -> Context:
        exam = self._load("exam", exam_id, "Exam")
        if principal.role == "student":
            enrollment = self.store.find_one("enrollment", {"student_id": principal.id, "exam_id": exam_id})
            if not enrollment or enrollment.get("status") not in ACTIVE_ENROLLMENT:
                raise self.deny(ErrorCode.NOT_ENROLLED, principal, resource, action, exam_id, "Not enrolled in exam")
            if not self.exam_is_open(exam):
                raise self.deny(ErrorCode.OUTSIDE_WINDOW, principal, resource, action, exam_id, "Exam is not available at this time")
            return {"exam": exam, "enrollment": enrollment}
        if principal.role == "instructor" and exam.get("instructor_id") != principal.id:
            raise self.deny(ErrorCode.NOT_OWNER, principal, resource, action, exam_id, "Exam owned by another instructor")
        return {"exam": exam}

    def _submission_policy(self, principal: Principal, resource: str, action: str, submission_id: str) -> Context:
        submission = self._load("submission", submission_id, "Submission")
        exam = self._load("exam", submission["exam_id"], "Exam")
        if principal.role == "student":
            if submission.get("student_id") != principal.id:
                raise self.deny(ErrorCode.NOT_OWNER, principal, resource, action, submission_id, "Submission of another student")
            if not self.exam_has_ended(exam):
                raise self.deny(ErrorCode.TOO_EARLY, principal, resource, action, submission_id, "Exam has not ended yet")
        elif principal.role == "instructor" and exam.get("instructor_id") != principal.id:
            raise self.deny(ErrorCode.NOT_OWNER, principal, resource, action, submission_id, "Exam owned by another instructor")
        return {"submission": submission, "exam": exam}

    def _result_policy(self, principal: Principal, resource: str, action: str, result_id: str) -> Context:
        result = self._load("result", result_id, "Result")
        exam = self._load("exam", result["exam_id"], "Exam")
        if principal.role == "student":
            if result.get("student_id") != principal.id:
                raise self.deny(ErrorCode.NOT_OWNER, principal, resource, action, result_id, "Result of another student")
            if result.get("status") == "pending":
                raise self.deny(ErrorCode.NOT_PUBLISHED, principal, resource, action, result_id, "Result not yet published")
        elif principal.role == "instructor" and exam.get("instructor_id") != principal.id:
            raise self.deny(ErrorCode.NOT_OWNER, principal, resource, action, result_id, "Exam owned by another instructor")
        return {"result": result, "exam": exam}
