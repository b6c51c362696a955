from typing import Any, Dict, List, Optional

from .accounts import public_user
from .audit import AuditTrail
from .authorization import AuthorizationEngine
from .database import Store
from .errors import ErrorCode, PortalError
from .exams import exam_summary
from .schemas import camelize
from .sessions import Principal

EXAM_REF_FIELDS = ("title", "total_marks", "passing_marks", "start_time", "end_time")
USER_LIST_FIELDS = ("_id", "username", "email", "created_at", "last_login", "is_active")


def _pick(doc: Optional[Dict[str, Any]], fields) -> Optional[Dict[str, Any]]:
    if not doc:
        return None
    return {k: doc.get(k) for k in ("_id",) + tuple(f for f in fields if f != "_id")}


def result_stats(exam: Dict[str, Any], results: List[Dict[str, Any]]) -> Dict[str, Any]:
    graded = [r for r in results if r.get("status") != "pending"]
    pass_mark = (exam["passing_marks"] / exam["total_marks"] * 100) if exam.get("total_marks") else 0
    return {
        "totalStudents": len(results),
        "graded": len(graded),
        "pending": len(results) - len(graded),
        "passed": sum(1 for r in graded if r["percentage"] >= pass_mark),
        "averagePercentage": round(sum(r["percentage"] for r in graded) / len(graded), 2) if graded else 0,
        "highestScore": max((r["marks_obtained"] for r in graded), default=0),
        "lowestScore": min((r["marks_obtained"] for r in graded), default=0),
    }


class ResultService:
    def __init__(self, store: Store, engine: AuthorizationEngine):
        self.store = store
        self.engine = engine

    def _expand(self, result: Dict[str, Any]) -> Dict[str, Any]:
        doc = camelize(result)
        doc["examId"] = camelize(_pick(self.store.get_document("exam", result["exam_id"]), EXAM_REF_FIELDS))
        student = self.store.get_document("user", result["student_id"])
        doc["studentId"] = _pick(student, ("username", "email"))
        return doc

    def my_results(self, principal: Principal) -> Dict[str, Any]:
        rows = self.store.get_documents("result", {"student_id": principal.id}, sort=[("graded_at", -1)])
        results = [self._expand(r) for r in rows if r.get("status") != "pending"]
        pending = [self._expand(r) for r in rows if r.get("status") == "pending"]
        return {"results": results, "pendingResults": pending, "pendingCount": len(pending)}

    def get_result(self, principal: Principal, result_id: str) -> Dict[str, Any]:
        ctx = self.engine.authorize(principal, "results", "view", result_id)
        return self._expand(ctx["result"])

    def exam_results(self, principal: Principal, exam_id: str) -> Dict[str, Any]:
        self.engine.authorize(principal, "results", "view")
        exam = self.store.get_document("exam", exam_id)
        if not exam:
            raise PortalError(ErrorCode.NOT_FOUND, "Exam not found")
        if principal.role == "student":
            rows = self.store.get_documents("result", {"exam_id": exam_id, "student_id": principal.id})
            return {"results": [self._expand(r) for r in rows if r.get("status") != "pending"]}
        if not self.engine.owns_exam(principal, exam):
            raise self.engine.deny(ErrorCode.NOT_OWNER, principal, "results", "view", exam_id, "Exam owned by another instructor")
        rows = self.store.get_documents("result", {"exam_id": exam_id}, sort=[("percentage", -1)])
        return {"results": [self._expand(r) for r in rows], "stats": result_stats(exam, rows)}


class AdminService:
    def __init__(self, store: Store, engine: AuthorizationEngine, audit: AuditTrail):
        self.store = store
        self.engine = engine
        self.audit = audit

    def stats(self, principal: Principal) -> Dict[str, Any]:
        self.engine.require_role(principal, "admin")
        count = self.store.count_documents
        return {
            "totalUsers": count("user"),
            "totalStudents": count("user", {"role": "student"}),
            "totalInstructors": count("user", {"role": "instructor"}),
            "totalAdmins": count("user", {"role": "admin"}),
            "totalExams": count("exam"),
            "totalSubmissions": count("submission"),
        }

    def users(self, principal: Principal) -> List[Dict[str, Any]]:
        self.engine.require_role(principal, "admin")
        return [camelize(public_user(u)) for u in self.store.get_documents("user", sort=[("created_at", -1)])]

    def instructors(self, principal: Principal) -> List[Dict[str, Any]]:
        self.engine.require_role(principal, "admin")
        rows = []
        for user in self.store.get_documents("user", {"role": "instructor"}, sort=[("username", 1)]):
            row = camelize(_pick(user, USER_LIST_FIELDS))
            row["examCount"] = self.store.count_documents("exam", {"instructor_id": user["_id"]})
            rows.append(row)
        return rows

    def students(self, principal: Principal) -> List[Dict[str, Any]]:
        self.engine.require_role(principal, "admin")
        rows = []
        for user in self.store.get_documents("user", {"role": "student"}, sort=[("username", 1)]):
            row = camelize(_pick(user, USER_LIST_FIELDS))
            row["submissionCount"] = self.store.count_documents("submission", {"student_id": user["_id"]})
            row["enrollmentCount"] = self.store.count_documents("enrollment", {"student_id": user["_id"]})
            rows.append(row)
        return rows

    def exams(self, principal: Principal) -> List[Dict[str, Any]]:
        self.engine.require_role(principal, "admin")
        rows = []
        for exam in self.store.get_documents("exam", sort=[("created_at", -1)]):
            row = exam_summary(exam)
            row["instructor"] = _pick(self.store.get_document("user", exam["instructor_id"]), ("username", "email"))
            row["submissionCount"] = self.store.count_documents("submission", {"exam_id": exam["_id"]})
            row["enrollmentCount"] = self.store.count_documents("enrollment", {"exam_id": exam["_id"]})
            rows.append(row)
        return rows

    def participants(self, principal: Principal, exam_id: str) -> Dict[str, Any]:
        self.engine.require_role(principal, "admin")
        exam = self.store.get_document("exam", exam_id)
        if not exam:
            raise PortalError(ErrorCode.NOT_FOUND, "Exam not found")
        submissions = {s["student_id"]: s for s in self.store.get_documents("submission", {"exam_id": exam_id})}
        results = {r["student_id"]: r for r in self.store.get_documents("result", {"exam_id": exam_id})}

        participants = []
        for enrollment in self.store.get_documents("enrollment", {"exam_id": exam_id}):
            sid = enrollment["student_id"]
            submission, result = submissions.get(sid), results.get(sid)
            participants.append({
                "student": _pick(self.store.get_document("user", sid), ("username", "email")),
                "enrolledAt": enrollment.get("enrolled_at"),
                "status": enrollment["status"],
                "hasSubmitted": submission is not None,
                "submittedAt": submission["submitted_at"] if submission else None,
                "result": {
                    "marksObtained": result["marks_obtained"],
                    "totalMarks": result["total_marks"],
                    "percentage": result["percentage"],
                    "grade": result["grade"],
                    "status": result["status"],
                } if result else None,
            })
        return {
            "exam": {
                "_id": exam["_id"],
                "title": exam["title"],
                "instructor": _pick(self.store.get_document("user", exam["instructor_id"]), ("username", "email")),
            },
            "participants": participants,
        }

    def audit_logs(self, principal: Principal, limit: int = 100) -> List[Dict[str, Any]]:
        self.engine.require_role(principal, "admin")
        return [camelize(entry) for entry in self.audit.latest(limit)]
