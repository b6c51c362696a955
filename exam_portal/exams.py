import logging
from typing import Any, Dict, List, Optional

from .audit import AuditTrail
from .authorization import AuthorizationEngine
from .clock import Clock, as_utc
from .crypto import EncryptionService, encode_base64, hash_data, verify_integrity
from .database import Store
from .errors import ErrorCode, PortalError
from .grading import apply_manual_grades, assign_grade, grade_submission
from .schemas import (
    AUTO_GRADED_TYPES,
    BulkEnrollRequest,
    CreateExamRequest,
    Enrollment,
    Exam,
    GradeRequest,
    Result,
    Submission,
    UpdateExamRequest,
    camelize,
)
from .sessions import Principal

logger = logging.getLogger(__name__)

MANUAL_TYPES = ("short_answer", "essay")


def exam_summary(exam: Dict[str, Any]) -> Dict[str, Any]:
    """Exam metadata without the encrypted content."""
    return camelize({k: v for k, v in exam.items() if k not in ("questions_encrypted", "content_hash")})


def _user_ref(user: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not user:
        return None
    return {"_id": user["_id"], "username": user["username"], "email": user["email"]}


class ExamService:
    def __init__(
        self,
        store: Store,
        cipher: EncryptionService,
        engine: AuthorizationEngine,
        audit: AuditTrail,
        clock: Clock,
        frontend_url: str,
        verify_content_hash: bool = False,
    ):
        self.store = store
        self.cipher = cipher
        self.engine = engine
        self.audit = audit
        self.clock = clock
        self.frontend_url = frontend_url.rstrip("/")
        self.verify_content_hash = verify_content_hash

    # ---------------------- Exams ----------------------
    def create_exam(self, principal: Principal, payload: CreateExamRequest) -> Dict[str, Any]:
        self.engine.authorize(principal, "exam", "create")
        if not payload.title.strip() or not payload.questions:
            raise PortalError(ErrorCode.INVALID_INPUT, "Title and questions are required")
        start, end = as_utc(payload.start_time), as_utc(payload.end_time)
        if end <= start:
            raise PortalError(ErrorCode.INVALID_INPUT, "endTime must be after startTime")
        questions = [q.model_dump(by_alias=True) for q in payload.questions]
        for idx, q in enumerate(questions):
            if q["questionType"] in AUTO_GRADED_TYPES and not (q.get("correctAnswer") or "").strip():
                raise PortalError(ErrorCode.INVALID_INPUT, f"Question {idx} needs a correct answer")

        now = self.clock.now()
        exam_id = self.store.create_document("exam", Exam(
            title=payload.title,
            description=payload.description,
            questions_encrypted=self.cipher.encrypt(questions),
            content_hash=hash_data(questions),
            instructor_id=principal.id,
            start_time=start,
            end_time=end,
            total_marks=payload.total_marks or 100,
            passing_marks=payload.passing_marks if payload.passing_marks is not None else 40,
            created_at=now,
        ))
        self.audit.record("create_exam", "success", user_id=principal.id, resource_type="exam", resource_id=exam_id)
        return {
            "message": "Exam created successfully",
            "examId": exam_id,
            "exam": {
                "id": exam_id,
                "title": payload.title,
                "startTime": start,
                "endTime": end,
                "totalMarks": payload.total_marks or 100,
            },
        }

    def list_exams(self, principal: Principal) -> List[Dict[str, Any]]:
        if principal.role == "admin":
            exams = self.store.get_documents("exam", sort=[("created_at", -1)])
            return [exam_summary(e) for e in exams]
        if principal.role == "instructor":
            exams = self.store.get_documents("exam", {"instructor_id": principal.id}, sort=[("created_at", -1)])
            return [exam_summary(e) for e in exams]
        listed = []
        for enrollment in self.store.get_documents("enrollment", {"student_id": principal.id}):
            exam = self.store.get_document("exam", enrollment["exam_id"])
            if exam:
                listed.append({**exam_summary(exam), "enrollmentStatus": enrollment["status"]})
        return listed

    def load_questions(self, exam: Dict[str, Any]) -> List[Dict[str, Any]]:
        questions = self.cipher.decrypt(exam["questions_encrypted"])
        if self.verify_content_hash and not verify_integrity(questions, exam.get("content_hash")):
            logger.error("Content hash mismatch for exam %s", exam["_id"])
            raise PortalError(ErrorCode.INTEGRITY, "Exam content does not match its hash")
        return questions

    def get_exam_questions(self, principal: Principal, exam_id: str) -> Dict[str, Any]:
        exam = self.engine.authorize(principal, "exam", "view", exam_id)["exam"]
        questions = self.load_questions(exam)
        start, end = as_utc(exam["start_time"]), as_utc(exam["end_time"])
        view = {
            "examId": exam["_id"],
            "title": exam["title"],
            "description": exam.get("description"),
            "duration": int((end - start).total_seconds() // 60),
            "totalMarks": exam["total_marks"],
            "endTime": end.isoformat(),
            "questions": [
                {
                    "index": idx,
                    "questionText": q["questionText"],
                    "questionType": q["questionType"],
                    "options": q.get("options") or [],
                    "marks": q.get("marks"),
                }
                for idx, q in enumerate(questions)
            ],
        }
        return {"data": encode_base64(view), "message": "Exam questions retrieved successfully"}

    def update_exam(self, principal: Principal, exam_id: str, payload: UpdateExamRequest) -> Dict[str, Any]:
        exam = self.engine.authorize(principal, "exam", "edit", exam_id)["exam"]
        changes = payload.model_dump(exclude_none=True)
        if "title" in changes and not changes["title"].strip():
            raise PortalError(ErrorCode.INVALID_INPUT, "Title is required")
        for key in ("start_time", "end_time"):
            if key in changes:
                changes[key] = as_utc(changes[key])
        start = changes.get("start_time", as_utc(exam["start_time"]))
        end = changes.get("end_time", as_utc(exam["end_time"]))
        if end <= start:
            raise PortalError(ErrorCode.INVALID_INPUT, "endTime must be after startTime")
        changes["updated_at"] = self.clock.now()
        self.store.update_document("exam", exam_id, changes)
        self.audit.record("update_exam", "success", user_id=principal.id, resource_type="exam", resource_id=exam_id)
        return exam_summary({**exam, **changes})

    def delete_exam(self, principal: Principal, exam_id: str) -> None:
        self.engine.authorize(principal, "exam", "delete", exam_id)
        if self.store.count_documents("submission", {"exam_id": exam_id}):
            raise PortalError(ErrorCode.CONFLICT, "Exam already has submissions")
        self.store.delete_documents("enrollment", {"exam_id": exam_id})
        self.store.delete_documents("exam", {"_id": exam_id})
        self.audit.record("delete_exam", "success", user_id=principal.id, resource_type="exam", resource_id=exam_id)

    # ---------------------- Enrollment ----------------------
    def _enroll(self, principal: Principal, exam_id: str, student_id: str) -> str:
        student = self.store.get_document("user", student_id)
        if not student or student.get("role") != "student":
            raise PortalError(ErrorCode.INVALID_INPUT, "Invalid student ID")
        try:
            enrollment_id = self.store.create_document("enrollment", Enrollment(
                student_id=student_id, exam_id=exam_id, enrolled_at=self.clock.now(),
            ))
        except PortalError as e:
            if e.code == ErrorCode.CONFLICT:
                raise PortalError(ErrorCode.CONFLICT, "Student already enrolled")
            raise
        self.audit.record(
            "enroll_student", "success", user_id=principal.id, resource_type="enrollment",
            resource_id=enrollment_id, details={"studentId": student_id, "examId": exam_id},
        )
        return enrollment_id

    def enroll_student(self, principal: Principal, exam_id: str, student_id: str) -> None:
        self.engine.require_role(principal, "instructor", "admin")
        self.engine.authorize(principal, "exam", "edit", exam_id)
        self._enroll(principal, exam_id, student_id)

    def enroll_students(self, principal: Principal, exam_id: str, payload: BulkEnrollRequest) -> Dict[str, Any]:
        self.engine.require_role(principal, "instructor", "admin")
        self.engine.authorize(principal, "exam", "edit", exam_id)
        results: Dict[str, List[Any]] = {"enrolled": [], "failed": []}
        for student_id in payload.student_ids:
            try:
                self._enroll(principal, exam_id, student_id)
            except PortalError as e:
                reason = "Already enrolled" if e.code == ErrorCode.CONFLICT else "Invalid student"
                results["failed"].append({"studentId": student_id, "reason": reason})
                continue
            results["enrolled"].append(student_id)
        return results

    def list_students(self, principal: Principal) -> List[Dict[str, Any]]:
        self.engine.require_role(principal, "instructor", "admin")
        students = self.store.get_documents("user", {"role": "student", "is_active": True}, sort=[("username", 1)])
        return [_user_ref(s) for s in students]

    # ---------------------- Submissions ----------------------
    def submit_exam(self, principal: Principal, exam_id: str, answers: Dict[str, Optional[str]]) -> Dict[str, Any]:
        self.engine.authorize(principal, "submission", "create")
        exam = self.store.get_document("exam", exam_id)
        if not exam:
            raise PortalError(ErrorCode.NOT_FOUND, "Exam not found")
        enrollment = self.store.find_one("enrollment", {"student_id": principal.id, "exam_id": exam_id})
        if not enrollment or enrollment.get("status") == "withdrawn":
            raise self.engine.deny(ErrorCode.NOT_ENROLLED, principal, "submission", "create", exam_id, "Not enrolled in exam")
        if enrollment.get("status") == "completed":
            raise PortalError(ErrorCode.CONFLICT, "You have already submitted this exam")
        if not self.engine.exam_is_open(exam):
            raise self.engine.deny(
                ErrorCode.OUTSIDE_WINDOW, principal, "submission", "create", exam_id, "Exam submission window closed"
            )

        questions = self.load_questions(exam)
        now = self.clock.now()
        try:
            submission_id = self.store.create_document("submission", Submission(
                student_id=principal.id,
                exam_id=exam_id,
                answers_encrypted=self.cipher.encrypt(answers),
                answers_hash=hash_data(answers),
                submitted_at=now,
            ))
        except PortalError as e:
            if e.code == ErrorCode.CONFLICT:
                raise PortalError(ErrorCode.CONFLICT, "You have already submitted this exam")
            raise
        self.store.update_document("enrollment", enrollment["_id"], {"status": "completed"})

        outcome = grade_submission(questions, answers)
        manual = outcome.requires_manual_grading
        self.store.create_document("result", Result(
            student_id=principal.id,
            exam_id=exam_id,
            submission_id=submission_id,
            total_marks=outcome.total_marks,
            marks_obtained=outcome.earned_marks,
            percentage=outcome.percentage,
            grade=assign_grade(outcome.percentage),
            status="pending" if manual else "published",
            graded_answers=outcome.graded_answers,
            graded_at=now,
        ))
        if not manual:
            self.store.update_document("submission", submission_id, {"graded": True, "graded_at": now})

        self.audit.record(
            "submit_exam", "success", user_id=principal.id, resource_type="submission", resource_id=submission_id
        )
        return {"message": "Exam submitted successfully", "submissionId": submission_id, "requiresManualGrading": manual}

    def list_submissions(self, principal: Principal, exam_id: str) -> List[Dict[str, Any]]:
        self.engine.require_role(principal, "instructor", "admin")
        self.engine.authorize(principal, "exam", "view", exam_id)
        results = {r["student_id"]: r for r in self.store.get_documents("result", {"exam_id": exam_id})}
        listed = []
        for s in self.store.get_documents("submission", {"exam_id": exam_id}, sort=[("submitted_at", -1)]):
            entry = camelize({k: v for k, v in s.items() if k not in ("answers_encrypted", "answers_hash")})
            entry["studentId"] = _user_ref(self.store.get_document("user", s["student_id"])) or s["student_id"]
            result = results.get(s["student_id"])
            entry["result"] = camelize(result) if result else None
            listed.append(entry)
        return listed

    def get_submission(self, principal: Principal, exam_id: str, submission_id: str) -> Dict[str, Any]:
        ctx = self.engine.authorize(principal, "submission", "view", submission_id)
        submission, exam = ctx["submission"], ctx["exam"]
        if submission["exam_id"] != exam_id:
            raise PortalError(ErrorCode.NOT_FOUND, "Submission not found")

        questions = self.load_questions(exam)
        answers = self.cipher.decrypt(submission["answers_encrypted"])
        result = self.store.find_one("result", {"submission_id": submission_id})
        graded = (result or {}).get("graded_answers") or []
        show_marks = principal.role != "student" or (result or {}).get("status") == "published"

        detail = []
        for idx, q in enumerate(questions):
            ga = graded[idx] if idx < len(graded) else {}
            entry = {
                "questionText": q["questionText"],
                "questionType": q["questionType"],
                "maxMarks": q.get("marks"),
                "studentAnswer": answers.get(str(idx)) or "",
            }
            if show_marks:
                entry.update({
                    "isCorrect": ga.get("is_correct", False),
                    "marksAwarded": ga.get("marks_obtained", 0),
                    "feedback": ga.get("feedback", ""),
                })
            if principal.role != "student":
                entry["correctAnswer"] = q.get("correctAnswer")
                entry["requiresManualGrading"] = q["questionType"] in MANUAL_TYPES
            detail.append(entry)

        return {
            "_id": submission["_id"],
            "studentId": _user_ref(self.store.get_document("user", submission["student_id"])),
            "submittedAt": submission["submitted_at"],
            "graded": submission.get("graded", False),
            "answers": detail,
        }

    def grade(self, principal: Principal, exam_id: str, payload: GradeRequest) -> Dict[str, Any]:
        ctx = self.engine.authorize(principal, "submission", "grade", payload.submission_id)
        submission = ctx["submission"]
        if submission["exam_id"] != exam_id:
            raise PortalError(ErrorCode.NOT_FOUND, "Submission not found")
        result = self.store.find_one("result", {"submission_id": submission["_id"]})
        if not result:
            raise PortalError(ErrorCode.NOT_FOUND, "Result not found")
        try:
            grades = {int(idx): (g.marks_awarded, g.feedback) for idx, g in payload.grades.items()}
        except ValueError:
            raise PortalError(
                ErrorCode.INVALID_INPUT, "Grades must be keyed by question index",
                subject_id=principal.id, action="grade_exam",
            )
        try:
            answers, obtained, percentage, grade, pending = apply_manual_grades(
                result["graded_answers"], grades, result["total_marks"]
            )
        except PortalError as e:
            e.subject_id, e.action = principal.id, "grade_exam"
            e.context = {"resource_type": "submission", "resource_id": submission["_id"]}
            raise
        now = self.clock.now()
        status = "pending" if pending else "published"
        self.store.update_document("result", result["_id"], {
            "graded_answers": answers,
            "marks_obtained": obtained,
            "percentage": percentage,
            "grade": grade,
            "status": status,
            "graded_by": principal.id,
            "graded_at": now,
        })
        self.store.update_document("submission", submission["_id"], {
            "graded": not pending, "graded_by": principal.id, "graded_at": now,
        })
        self.audit.record(
            "grade_exam", "success", user_id=principal.id, resource_type="submission", resource_id=submission["_id"]
        )
        return {
            "message": "Grades submitted successfully",
            "result": {
                "marksObtained": obtained,
                "totalMarks": result["total_marks"],
                "percentage": percentage,
                "grade": grade,
                "status": status,
            },
        }

    # ---------------------- Admit cards ----------------------
    def admit_card(self, principal: Principal, exam_id: str) -> Dict[str, Any]:
        enrollment = self.store.find_one("enrollment", {"student_id": principal.id, "exam_id": exam_id})
        if not enrollment:
            raise self.engine.deny(ErrorCode.NOT_ENROLLED, principal, "exam", "admit_card", exam_id, "Not enrolled in exam")
        exam = self.store.get_document("exam", exam_id)
        if not exam:
            raise PortalError(ErrorCode.NOT_FOUND, "Exam not found")
        return {
            "studentName": principal.username,
            "studentEmail": principal.email,
            "studentId": principal.id,
            "examName": exam["title"],
            "examDate": exam["start_time"],
            "examEndTime": exam["end_time"],
            "verificationUrl": f"{self.frontend_url}/verify-admit/{exam_id}/{principal.id}",
        }

    def verify_admit(self, exam_id: str, student_id: str) -> Dict[str, Any]:
        enrollment = self.store.find_one("enrollment", {"student_id": student_id, "exam_id": exam_id})
        if not enrollment:
            raise PortalError(ErrorCode.NOT_FOUND, "Invalid admit card - not enrolled")
        student = self.store.get_document("user", student_id)
        exam = self.store.get_document("exam", exam_id)
        if not student or not exam:
            raise PortalError(ErrorCode.NOT_FOUND, "Invalid admit card")
        return {
            "verified": True,
            "studentName": student["username"],
            "studentEmail": student["email"],
            "studentId": student["_id"],
            "examName": exam["title"],
            "examStart": exam["start_time"],
            "examEnd": exam["end_time"],
        }
