import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer

from .accounts import AccountService
from .audit import AuditTrail
from .authorization import AuthorizationEngine
from .clock import Clock, SystemClock
from .config import Settings
from .crypto import EncryptionService
from .database import Store, create_store
from .errors import AUTHENTICATION_CODES, ErrorCode, PortalError, http_status, public_message
from .exams import ExamService
from .mailer import LoggingMailer, Mailer, SMTPMailer
from .otp import OneTimeCodeManager
from .reports import AdminService, ResultService
from .schemas import (
    BulkEnrollRequest,
    CreateExamRequest,
    EnrollStudentRequest,
    GradeRequest,
    LoginRequest,
    RegisterRequest,
    SubmitExamRequest,
    UpdateExamRequest,
    VerifyOtpRequest,
    camelize,
)
from .security import PasswordHasher, TokenSigner
from .sessions import Principal, SessionStageMachine

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


@dataclass
class Portal:
    settings: Settings
    store: Store
    audit: AuditTrail
    sessions: SessionStageMachine
    engine: AuthorizationEngine
    accounts: AccountService
    exams: ExamService
    results: ResultService
    admin: AdminService


def build_portal(settings: Settings, store: Store, mailer: Mailer, clock: Clock) -> Portal:
    settings.check()
    cipher = EncryptionService(settings.encryption_key)
    hasher = PasswordHasher(settings.bcrypt_rounds)
    signer = TokenSigner(settings.secret_key, settings.jwt_algorithm, clock)
    audit = AuditTrail(store, clock)
    codes = OneTimeCodeManager(store, hasher, clock, timedelta(minutes=settings.otp_expire_minutes))
    engine = AuthorizationEngine(store, clock, timedelta(minutes=settings.exam_grace_minutes))
    sessions = SessionStageMachine(
        store, hasher, signer, codes, mailer, audit, clock,
        temp_token_ttl=timedelta(minutes=settings.temp_token_expire_minutes),
        session_ttl=timedelta(hours=settings.access_token_expire_hours),
    )
    return Portal(
        settings=settings,
        store=store,
        audit=audit,
        sessions=sessions,
        engine=engine,
        accounts=AccountService(
            store, hasher, mailer, audit, clock, settings.frontend_url,
            verification_ttl=timedelta(hours=settings.email_verification_expire_hours),
            allow_admin_signup=settings.allow_admin_signup,
        ),
        exams=ExamService(
            store, cipher, engine, audit, clock, settings.frontend_url,
            verify_content_hash=settings.verify_content_hash,
        ),
        results=ResultService(store, engine),
        admin=AdminService(store, engine, audit),
    )


# ---------------------- Auth Helpers ----------------------
def get_portal(request: Request) -> Portal:
    return request.app.state.portal


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def bearer_token(token: Optional[str] = Depends(oauth2_scheme)) -> str:
    if not token:
        raise PortalError(ErrorCode.UNAUTHENTICATED, "No token provided")
    return token


def get_current_user(token: str = Depends(bearer_token), portal: Portal = Depends(get_portal)) -> Principal:
    return portal.sessions.authenticate(token)


# ---------------------- Error Handling ----------------------
async def handle_portal_error(request: Request, exc: PortalError):
    status = http_status(exc.code)
    if status >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.code.value, exc.detail)
    if exc.action or exc.subject_id or exc.code in AUTHENTICATION_CODES:
        context = dict(exc.context)
        details = {"reason": exc.code.value, "detail": exc.detail}
        details.update({k: v for k, v in context.items() if k not in ("resource_type", "resource_id")})
        get_portal(request).audit.record(
            exc.action or f"{request.method} {request.url.path}",
            "failure",
            user_id=exc.subject_id,
            resource_type=context.get("resource_type"),
            resource_id=context.get("resource_id"),
            details=details,
            ip_address=client_ip(request),
        )
    return JSONResponse(status_code=status, content={"message": public_message(exc)})


async def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Server error"})


# ---------------------- Auth Endpoints ----------------------
auth_router = APIRouter(prefix="/api/auth")


@auth_router.post("/register", status_code=201)
def register(payload: RegisterRequest, request: Request, portal: Portal = Depends(get_portal)):
    portal.accounts.register(payload, ip_address=client_ip(request))
    return {"message": "Registration successful. Please check your email to verify your account."}


@auth_router.get("/verify-email/{token}")
def verify_email(token: str, portal: Portal = Depends(get_portal)):
    portal.accounts.verify_email(token)
    return {"message": "Email verified successfully. You can now login."}


@auth_router.post("/login")
def login(payload: LoginRequest, request: Request, portal: Portal = Depends(get_portal)):
    temp_token = portal.sessions.verify_password(payload.username, payload.password, ip_address=client_ip(request))
    return {"message": "Password verified. Proceed to MFA.", "tempToken": temp_token, "requiresMFA": True}


@auth_router.post("/send-otp")
def send_otp(token: str = Depends(bearer_token), portal: Portal = Depends(get_portal)):
    # reported as sent even when delivery failed
    portal.sessions.request_code(token)
    return {"message": "OTP sent to email"}


@auth_router.post("/verify-otp")
def verify_otp(
    payload: VerifyOtpRequest,
    request: Request,
    token: str = Depends(bearer_token),
    portal: Portal = Depends(get_portal),
):
    full_token, user = portal.sessions.complete_mfa(token, payload.otp, ip_address=client_ip(request))
    return {
        "message": "Login successful",
        "token": full_token,
        "user": {"id": user["_id"], "username": user["username"], "email": user["email"], "role": user["role"]},
    }


@auth_router.get("/me")
def me(user: Principal = Depends(get_current_user), portal: Portal = Depends(get_portal)):
    return {"user": camelize(portal.accounts.profile(user.id))}


# ---------------------- Exams ----------------------
exam_router = APIRouter(prefix="/api/exams")


@exam_router.post("/exam", status_code=201)
def create_exam(payload: CreateExamRequest, user: Principal = Depends(get_current_user), portal: Portal = Depends(get_portal)):
    return portal.exams.create_exam(user, payload)


@exam_router.get("/exams")
def list_exams(user: Principal = Depends(get_current_user), portal: Portal = Depends(get_portal)):
    return {"exams": portal.exams.list_exams(user)}


@exam_router.get("/exam/{exam_id}/questions")
def exam_questions(exam_id: str, user: Principal = Depends(get_current_user), portal: Portal = Depends(get_portal)):
    return portal.exams.get_exam_questions(user, exam_id)


@exam_router.put("/exam/{exam_id}")
def update_exam(
    exam_id: str,
    payload: UpdateExamRequest,
    user: Principal = Depends(get_current_user),
    portal: Portal = Depends(get_portal),
):
    return {"message": "Exam updated successfully", "exam": portal.exams.update_exam(user, exam_id, payload)}


@exam_router.delete("/exam/{exam_id}")
def delete_exam(exam_id: str, user: Principal = Depends(get_current_user), portal: Portal = Depends(get_portal)):
    portal.exams.delete_exam(user, exam_id)
    return {"message": "Exam deleted successfully"}


@exam_router.post("/exam/{exam_id}/enroll-student")
def enroll_student(
    exam_id: str,
    payload: EnrollStudentRequest,
    user: Principal = Depends(get_current_user),
    portal: Portal = Depends(get_portal),
):
    portal.exams.enroll_student(user, exam_id, payload.student_id)
    return {"message": "Student enrolled successfully"}


@exam_router.post("/exam/{exam_id}/enroll-students")
def enroll_students(
    exam_id: str,
    payload: BulkEnrollRequest,
    user: Principal = Depends(get_current_user),
    portal: Portal = Depends(get_portal),
):
    return {"message": "Bulk enrollment complete", "results": portal.exams.enroll_students(user, exam_id, payload)}


@exam_router.get("/students")
def list_students(user: Principal = Depends(get_current_user), portal: Portal = Depends(get_portal)):
    return {"students": portal.exams.list_students(user)}


@exam_router.post("/exam/{exam_id}/submit")
def submit_exam(
    exam_id: str,
    payload: SubmitExamRequest,
    user: Principal = Depends(get_current_user),
    portal: Portal = Depends(get_portal),
):
    return portal.exams.submit_exam(user, exam_id, payload.answers)


@exam_router.get("/exam/{exam_id}/submissions")
def exam_submissions(exam_id: str, user: Principal = Depends(get_current_user), portal: Portal = Depends(get_portal)):
    return {"submissions": portal.exams.list_submissions(user, exam_id)}


@exam_router.get("/exam/{exam_id}/submission/{submission_id}")
def submission_detail(
    exam_id: str,
    submission_id: str,
    user: Principal = Depends(get_current_user),
    portal: Portal = Depends(get_portal),
):
    return {"submission": portal.exams.get_submission(user, exam_id, submission_id)}


@exam_router.post("/exam/{exam_id}/grade")
def grade_exam(
    exam_id: str,
    payload: GradeRequest,
    user: Principal = Depends(get_current_user),
    portal: Portal = Depends(get_portal),
):
    return portal.exams.grade(user, exam_id, payload)


@exam_router.get("/exam/{exam_id}/admit-card")
def admit_card(exam_id: str, user: Principal = Depends(get_current_user), portal: Portal = Depends(get_portal)):
    return portal.exams.admit_card(user, exam_id)


@exam_router.get("/verify-admit/{exam_id}/{student_id}")
def verify_admit(exam_id: str, student_id: str, portal: Portal = Depends(get_portal)):
    return portal.exams.verify_admit(exam_id, student_id)


# ---------------------- Results ----------------------
results_router = APIRouter(prefix="/api/results")


@results_router.get("/my-results")
def my_results(user: Principal = Depends(get_current_user), portal: Portal = Depends(get_portal)):
    return portal.results.my_results(user)


@results_router.get("/result/{result_id}")
def result_detail(result_id: str, user: Principal = Depends(get_current_user), portal: Portal = Depends(get_portal)):
    return {"result": portal.results.get_result(user, result_id)}


@results_router.get("/exam/{exam_id}/results")
def exam_results(exam_id: str, user: Principal = Depends(get_current_user), portal: Portal = Depends(get_portal)):
    return portal.results.exam_results(user, exam_id)


# ---------------------- Admin ----------------------
admin_router = APIRouter(prefix="/api/admin")


@admin_router.get("/stats")
def admin_stats(user: Principal = Depends(get_current_user), portal: Portal = Depends(get_portal)):
    return {"stats": portal.admin.stats(user)}


@admin_router.get("/users")
def admin_users(user: Principal = Depends(get_current_user), portal: Portal = Depends(get_portal)):
    return {"users": portal.admin.users(user)}


@admin_router.get("/instructors")
def admin_instructors(user: Principal = Depends(get_current_user), portal: Portal = Depends(get_portal)):
    return {"instructors": portal.admin.instructors(user)}


@admin_router.get("/students")
def admin_students(user: Principal = Depends(get_current_user), portal: Portal = Depends(get_portal)):
    return {"students": portal.admin.students(user)}


@admin_router.get("/exams")
def admin_exams(user: Principal = Depends(get_current_user), portal: Portal = Depends(get_portal)):
    return {"exams": portal.admin.exams(user)}


@admin_router.get("/exam/{exam_id}/participants")
def admin_participants(exam_id: str, user: Principal = Depends(get_current_user), portal: Portal = Depends(get_portal)):
    return portal.admin.participants(user, exam_id)


@admin_router.get("/audit-logs")
def admin_audit_logs(user: Principal = Depends(get_current_user), portal: Portal = Depends(get_portal)):
    return {"logs": portal.admin.audit_logs(user)}


# ---------------------- Application ----------------------
def create_app(
    settings: Optional[Settings] = None,
    store: Optional[Store] = None,
    mailer: Optional[Mailer] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level.upper())
    clock = clock or SystemClock()
    store = store or create_store(settings.database_url, settings.database_name)
    if mailer is None:
        if settings.smtp_host:
            mailer = SMTPMailer(
                settings.smtp_host, settings.smtp_port, settings.email_from,
                user=settings.smtp_user, password=settings.smtp_password,
            )
        else:
            mailer = LoggingMailer()

    app = FastAPI(title="Secure Exam Portal API")
    app.state.portal = build_portal(settings, store, mailer, clock)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(PortalError, handle_portal_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    @app.get("/")
    def read_root():
        return {"message": "Secure Exam Portal API running"}

    @app.get("/api/health")
    def health():
        return {"status": "OK", "message": "Secure Exam Portal API is running"}

    for router in (auth_router, exam_router, results_router, admin_router):
        app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(create_app(), host="0.0.0.0", port=port)
