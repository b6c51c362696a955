"""
Secure Exam Portal Schemas

Record models map to document-store collections named after the lowercase
record name:
- user: accounts for admin/instructor/student
- onetimecode: the active login code of a user, keyed by the user id
- exam: exams with encrypted questions and a content hash
- enrollment: student ↔ exam enrollments (unique per pair)
- submission: encrypted answers (unique per student and exam)
- result: grading outcome of a submission
- auditlog: security-relevant events

Request models use camelCase on the wire.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

Role = Literal["student", "instructor", "admin"]
QuestionType = Literal["multiple_choice", "true_false", "short_answer", "essay"]
EnrollmentStatus = Literal["enrolled", "completed", "withdrawn"]
ResultStatus = Literal["pending", "published"]

AUTO_GRADED_TYPES = ("multiple_choice", "true_false")


# ---------------------- Records ----------------------
class User(BaseModel):
    username: str
    email: str
    password_hash: str
    role: Role = "student"
    email_verified: bool = False
    email_verification_token: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None


class OneTimeCode(BaseModel):
    subject_id: str
    code_hash: str
    issued_at: datetime
    expires_at: datetime


class Exam(BaseModel):
    title: str
    description: Optional[str] = None
    questions_encrypted: str
    content_hash: str
    instructor_id: str
    start_time: datetime
    end_time: datetime
    total_marks: float = 100
    passing_marks: float = 40
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Enrollment(BaseModel):
    student_id: str
    exam_id: str
    enrolled_at: Optional[datetime] = None
    status: EnrollmentStatus = "enrolled"


class Submission(BaseModel):
    student_id: str
    exam_id: str
    answers_encrypted: str
    answers_hash: str
    submitted_at: datetime
    graded: bool = False
    graded_by: Optional[str] = None
    graded_at: Optional[datetime] = None


class GradedAnswer(BaseModel):
    question_index: int
    student_answer: str = ""
    is_correct: bool = False
    marks_obtained: float = 0
    max_marks: float = 0
    requires_manual_grading: bool = False
    feedback: str = ""


class Result(BaseModel):
    student_id: str
    exam_id: str
    submission_id: str
    total_marks: float
    marks_obtained: float
    percentage: float
    grade: str
    status: ResultStatus
    graded_answers: List[GradedAnswer] = []
    graded_by: Optional[str] = None
    graded_at: Optional[datetime] = None


class AuditLog(BaseModel):
    action: str
    status: Literal["success", "failure"]
    timestamp: datetime
    user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


# ---------------------- Requests ----------------------
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterRequest(CamelModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password: str
    role: Optional[Role] = None


class LoginRequest(CamelModel):
    username: str
    password: str


class VerifyOtpRequest(CamelModel):
    otp: str


class Question(CamelModel):
    question_text: str
    question_type: QuestionType
    options: List[str] = []
    correct_answer: Optional[str] = None
    marks: float = Field(1, ge=0)


class CreateExamRequest(CamelModel):
    title: str = ""
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    total_marks: Optional[float] = None
    passing_marks: Optional[float] = None
    questions: List[Question] = []


class UpdateExamRequest(CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    total_marks: Optional[float] = None
    passing_marks: Optional[float] = None


class EnrollStudentRequest(CamelModel):
    student_id: str


class BulkEnrollRequest(CamelModel):
    student_ids: List[str]


class SubmitExamRequest(CamelModel):
    # answers keyed by question index
    answers: Dict[str, Optional[str]] = {}


class ManualGrade(CamelModel):
    marks_awarded: float = Field(..., ge=0)
    feedback: Optional[str] = None


class GradeRequest(CamelModel):
    submission_id: str
    grades: Dict[str, ManualGrade]


def camelize(value: Any) -> Any:
    """Recursively rename snake_case document keys to the camelCase wire form."""
    if isinstance(value, dict):
        return {(k if k.startswith("_") else to_camel(k)): camelize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [camelize(v) for v in value]
    return value
