from datetime import timedelta

import pytest

from exam_portal.crypto import decode_base64
from exam_portal.errors import ACCESS_DENIED_MESSAGE

from tests.support import essay, iso, mcq

TEN_MCQ = [mcq(f"Question {i}", "A") for i in range(10)]


@pytest.fixture
def mcq_exam(instructor, student, create_exam, enroll):
    exam_id = create_exam(instructor.headers, TEN_MCQ)
    enroll(instructor.headers, exam_id, student.id)
    return exam_id


@pytest.fixture
def essay_exam(instructor, student, create_exam, enroll):
    exam_id = create_exam(instructor.headers, [essay("Explain CBC mode", 10)], title="Essay")
    enroll(instructor.headers, exam_id, student.id)
    return exam_id


@pytest.fixture
def during_exam(clock, exam_window):
    clock.set(exam_window[0] + timedelta(minutes=30))


def half_right():
    return {str(i): ("a " if i < 5 else "B") for i in range(10)}


def reasons(store, code):
    return [e for e in store.get_documents("auditlog", {"status": "failure"}) if e["details"]["reason"] == code]


class TestExamCreation:
    def test_content_is_encrypted_at_rest(self, mcq_exam, store, portal):
        exam = store.get_document("exam", mcq_exam)
        assert "Question 0" not in exam["questions_encrypted"]
        assert portal.exams.load_questions(exam)[0]["correctAnswer"] == "A"
        assert len(exam["content_hash"]) == 64

    def test_student_cannot_create(self, client, student, exam_window):
        response = client.post("/api/exams/exam", headers=student.headers, json={
            "title": "Nope", "startTime": iso(exam_window[0]), "endTime": iso(exam_window[1]), "questions": TEN_MCQ,
        })
        assert response.status_code == 403
        assert response.json()["message"] == ACCESS_DENIED_MESSAGE

    @pytest.mark.parametrize("overrides, message", [
        ({"questions": []}, "Title and questions are required"),
        ({"title": "  "}, "Title and questions are required"),
        ({"endTime": "2026-03-01T08:00:00Z"}, "endTime must be after startTime"),
        ({"questions": [{**mcq("q"), "correctAnswer": ""}]}, "Question 0 needs a correct answer"),
    ])
    def test_validation(self, client, instructor, exam_window, overrides, message):
        payload = {"title": "Quiz", "startTime": iso(exam_window[0]), "endTime": iso(exam_window[1]), "questions": TEN_MCQ}
        response = client.post("/api/exams/exam", headers=instructor.headers, json={**payload, **overrides})
        assert response.status_code == 400
        assert response.json()["message"] == message

    def test_listing_by_role(self, client, mcq_exam, instructor, student, admin, account):
        assert [e["_id"] for e in client.get("/api/exams/exams", headers=instructor.headers).json()["exams"]] == [mcq_exam]
        listed = client.get("/api/exams/exams", headers=student.headers).json()["exams"]
        assert listed[0]["enrollmentStatus"] == "enrolled"
        assert "questionsEncrypted" not in listed[0]
        assert len(client.get("/api/exams/exams", headers=admin.headers).json()["exams"]) == 1
        outsider = account("student2")
        assert client.get("/api/exams/exams", headers=outsider.headers).json()["exams"] == []

    def test_update_and_delete(self, client, mcq_exam, instructor, account):
        other = account("instructor2", "instructor")
        assert client.put(f"/api/exams/exam/{mcq_exam}", headers=other.headers, json={"title": "Mine"}).status_code == 403

        response = client.put(f"/api/exams/exam/{mcq_exam}", headers=instructor.headers, json={"title": "Final"})
        assert response.json()["exam"]["title"] == "Final"

        assert client.delete(f"/api/exams/exam/{mcq_exam}", headers=instructor.headers).status_code == 200
        assert client.put(f"/api/exams/exam/{mcq_exam}", headers=instructor.headers, json={"title": "x"}).status_code == 404


class TestEnrollment:
    def test_bulk_enrollment_reports_failures(self, client, mcq_exam, instructor, student, account):
        second = account("student2")
        response = client.post(f"/api/exams/exam/{mcq_exam}/enroll-students", headers=instructor.headers, json={
            "studentIds": [second.id, student.id, instructor.id],
        })
        results = response.json()["results"]
        assert results["enrolled"] == [second.id]
        assert results["failed"] == [
            {"studentId": student.id, "reason": "Already enrolled"},
            {"studentId": instructor.id, "reason": "Invalid student"},
        ]

    def test_single_enrollment_conflict(self, client, mcq_exam, instructor, student):
        response = client.post(f"/api/exams/exam/{mcq_exam}/enroll-student", headers=instructor.headers, json={
            "studentId": student.id,
        })
        assert response.status_code == 409

    def test_students_cannot_enroll_others(self, client, mcq_exam, student):
        response = client.post(f"/api/exams/exam/{mcq_exam}/enroll-student", headers=student.headers, json={
            "studentId": student.id,
        })
        assert response.status_code == 403

    def test_student_directory(self, client, instructor, student):
        students = client.get("/api/exams/students", headers=instructor.headers).json()["students"]
        assert students == [{"_id": student.id, "username": "student1", "email": "student1@example.com"}]


class TestTakingAnExam:
    def test_questions_hide_answers(self, client, mcq_exam, student, during_exam):
        response = client.get(f"/api/exams/exam/{mcq_exam}/questions", headers=student.headers)
        assert response.status_code == 200
        view = decode_base64(response.json()["data"])
        assert view["duration"] == 120
        assert len(view["questions"]) == 10
        assert all("correctAnswer" not in q for q in view["questions"])

    def test_questions_before_start(self, client, mcq_exam, student, store):
        response = client.get(f"/api/exams/exam/{mcq_exam}/questions", headers=student.headers)
        assert response.status_code == 403
        assert reasons(store, "OutsideWindow")[0]["user_id"] == student.id

    def test_questions_when_not_enrolled(self, client, mcq_exam, account, store, during_exam):
        outsider = account("student2")
        response = client.get(f"/api/exams/exam/{mcq_exam}/questions", headers=outsider.headers)
        assert response.status_code == 403
        assert response.json()["message"] == ACCESS_DENIED_MESSAGE
        entry = reasons(store, "NotEnrolled")[0]
        assert entry["resource_type"] == "exam"
        assert entry["resource_id"] == mcq_exam

    def test_auto_graded_submission_is_published(self, client, mcq_exam, student, store, during_exam):
        response = client.post(f"/api/exams/exam/{mcq_exam}/submit", headers=student.headers, json={"answers": half_right()})
        assert response.status_code == 200
        assert response.json()["requiresManualGrading"] is False

        result = store.find_one("result", {"student_id": student.id})
        assert result["marks_obtained"] == 5
        assert result["total_marks"] == 10
        assert result["percentage"] == 50.0
        assert result["grade"] == "F"
        assert result["status"] == "published"

        submission = store.get_document("submission", response.json()["submissionId"])
        assert submission["graded"]
        assert "a " not in submission["answers_encrypted"]
        assert store.find_one("enrollment", {"student_id": student.id})["status"] == "completed"

    def test_two_question_exam_starting_now(self, client, instructor, student, create_exam, enroll, clock, store):
        now = clock.now()
        exam_id = create_exam(
            instructor.headers, [mcq("q0", "A", 5), mcq("q1", "C", 5)], start=now, end=now + timedelta(hours=1)
        )
        enroll(instructor.headers, exam_id, student.id)
        response = client.post(f"/api/exams/exam/{exam_id}/submit", headers=student.headers, json={
            "answers": {"0": "A", "1": "B"},
        })
        assert response.json()["requiresManualGrading"] is False

        result = client.get("/api/results/my-results", headers=student.headers).json()["results"][0]
        assert result["marksObtained"] == 5
        assert result["percentage"] == 50.0
        assert result["grade"] == "F"
        assert result["status"] == "published"

    def test_second_submission_conflicts(self, client, mcq_exam, student, store, during_exam):
        client.post(f"/api/exams/exam/{mcq_exam}/submit", headers=student.headers, json={"answers": half_right()})
        response = client.post(f"/api/exams/exam/{mcq_exam}/submit", headers=student.headers, json={"answers": {}})
        assert response.status_code == 409
        assert response.json()["message"] == "You have already submitted this exam"
        assert store.count_documents("submission") == 1

    def test_grace_period(self, client, mcq_exam, student, clock, exam_window):
        clock.set(exam_window[1] + timedelta(minutes=5))
        response = client.post(f"/api/exams/exam/{mcq_exam}/submit", headers=student.headers, json={"answers": {}})
        assert response.status_code == 200

    def test_after_grace_period(self, client, mcq_exam, student, clock, exam_window, store):
        clock.set(exam_window[1] + timedelta(minutes=5, seconds=1))
        response = client.post(f"/api/exams/exam/{mcq_exam}/submit", headers=student.headers, json={"answers": {}})
        assert response.status_code == 403
        assert store.count_documents("submission") == 0
        assert reasons(store, "OutsideWindow")

    def test_not_enrolled_submission(self, client, mcq_exam, account, store, during_exam):
        outsider = account("student2")
        response = client.post(f"/api/exams/exam/{mcq_exam}/submit", headers=outsider.headers, json={"answers": {}})
        assert response.status_code == 403
        assert reasons(store, "NotEnrolled")

    def test_instructor_cannot_submit(self, client, mcq_exam, instructor, during_exam):
        response = client.post(f"/api/exams/exam/{mcq_exam}/submit", headers=instructor.headers, json={"answers": {}})
        assert response.status_code == 403

    def test_exam_with_submissions_cannot_be_deleted(self, client, mcq_exam, instructor, student, during_exam):
        client.post(f"/api/exams/exam/{mcq_exam}/submit", headers=student.headers, json={"answers": half_right()})
        assert client.delete(f"/api/exams/exam/{mcq_exam}", headers=instructor.headers).status_code == 409


class TestGrading:
    def submit_essay(self, client, essay_exam, student):
        response = client.post(f"/api/exams/exam/{essay_exam}/submit", headers=student.headers, json={
            "answers": {"0": "CBC chains blocks"},
        })
        assert response.json()["requiresManualGrading"] is True
        return response.json()["submissionId"]

    def test_manual_grade_publishes_result(self, client, essay_exam, instructor, student, store, during_exam):
        submission_id = self.submit_essay(client, essay_exam, student)
        result = store.find_one("result", {"submission_id": submission_id})
        assert result["status"] == "pending"

        mine = client.get("/api/results/my-results", headers=student.headers).json()
        assert mine["results"] == []
        assert mine["pendingCount"] == 1
        assert client.get(f"/api/results/result/{result['_id']}", headers=student.headers).status_code == 403

        response = client.post(f"/api/exams/exam/{essay_exam}/grade", headers=instructor.headers, json={
            "submissionId": submission_id,
            "grades": {"0": {"marksAwarded": 8, "feedback": "Good"}},
        })
        assert response.status_code == 200
        assert response.json()["result"] == {
            "marksObtained": 8, "totalMarks": 10, "percentage": 80.0, "grade": "B", "status": "published",
        }

        response = client.get(f"/api/results/result/{result['_id']}", headers=student.headers)
        assert response.status_code == 200
        assert response.json()["result"]["grade"] == "B"
        assert store.get_document("submission", submission_id)["graded_by"] == instructor.id

    def test_marks_above_question_maximum(self, client, essay_exam, instructor, student, store, during_exam):
        submission_id = self.submit_essay(client, essay_exam, student)
        response = client.post(f"/api/exams/exam/{essay_exam}/grade", headers=instructor.headers, json={
            "submissionId": submission_id,
            "grades": {"0": {"marksAwarded": 11}},
        })
        assert response.status_code == 400
        failure = reasons(store, "InvalidInput")[0]
        assert failure["action"] == "grade_exam"
        assert failure["user_id"] == instructor.id
        assert failure["resource_id"] == submission_id

    def test_only_the_owner_grades(self, client, essay_exam, student, account, store, during_exam):
        submission_id = self.submit_essay(client, essay_exam, student)
        other = account("instructor2", "instructor")
        response = client.post(f"/api/exams/exam/{essay_exam}/grade", headers=other.headers, json={
            "submissionId": submission_id,
            "grades": {"0": {"marksAwarded": 10}},
        })
        assert response.status_code == 403
        assert reasons(store, "NotOwner")
        assert store.find_one("result", {"submission_id": submission_id})["status"] == "pending"

    def test_students_cannot_grade(self, client, essay_exam, student, during_exam):
        submission_id = self.submit_essay(client, essay_exam, student)
        response = client.post(f"/api/exams/exam/{essay_exam}/grade", headers=student.headers, json={
            "submissionId": submission_id,
            "grades": {"0": {"marksAwarded": 10}},
        })
        assert response.status_code == 403


class TestReviewingSubmissions:
    def test_student_review_waits_for_exam_end(self, client, mcq_exam, student, store, clock, exam_window, during_exam):
        response = client.post(f"/api/exams/exam/{mcq_exam}/submit", headers=student.headers, json={"answers": half_right()})
        submission_id = response.json()["submissionId"]
        url = f"/api/exams/exam/{mcq_exam}/submission/{submission_id}"

        assert client.get(url, headers=student.headers).status_code == 403
        assert reasons(store, "TooEarly")

        clock.set(exam_window[1])
        answers = client.get(url, headers=student.headers).json()["submission"]["answers"]
        assert answers[0]["studentAnswer"] == "a "
        assert answers[0]["isCorrect"] is True
        assert "correctAnswer" not in answers[0]

    def test_instructor_sees_correct_answers(self, client, mcq_exam, instructor, student, during_exam):
        response = client.post(f"/api/exams/exam/{mcq_exam}/submit", headers=student.headers, json={"answers": half_right()})
        submission_id = response.json()["submissionId"]

        listed = client.get(f"/api/exams/exam/{mcq_exam}/submissions", headers=instructor.headers).json()["submissions"]
        assert listed[0]["studentId"]["username"] == "student1"
        assert listed[0]["result"]["grade"] == "F"

        detail = client.get(f"/api/exams/exam/{mcq_exam}/submission/{submission_id}", headers=instructor.headers)
        assert detail.json()["submission"]["answers"][9]["correctAnswer"] == "A"


class TestContentIntegrity:
    def test_hash_mismatch_is_tolerated_by_default(self, client, mcq_exam, student, store, during_exam):
        store.update_document("exam", mcq_exam, {"content_hash": "0" * 64})
        assert client.get(f"/api/exams/exam/{mcq_exam}/questions", headers=student.headers).status_code == 200

    def test_hash_mismatch_fails_when_verification_is_on(self, client, mcq_exam, student, store, portal, during_exam):
        portal.exams.verify_content_hash = True
        store.update_document("exam", mcq_exam, {"content_hash": "0" * 64})
        response = client.get(f"/api/exams/exam/{mcq_exam}/questions", headers=student.headers)
        assert response.status_code == 500
        assert response.json()["message"] == "Server error"

    def test_undecryptable_content(self, client, mcq_exam, student, store, during_exam):
        store.update_document("exam", mcq_exam, {"questions_encrypted": "00" * 16 + ":" + "11" * 16})
        response = client.get(f"/api/exams/exam/{mcq_exam}/questions", headers=student.headers)
        assert response.status_code == 500


class TestAdmitCards:
    def test_admit_card_round_trip(self, client, mcq_exam, student):
        card = client.get(f"/api/exams/exam/{mcq_exam}/admit-card", headers=student.headers).json()
        assert card["examName"] == "Midterm"
        assert card["verificationUrl"].endswith(f"/verify-admit/{mcq_exam}/{student.id}")

        verified = client.get(f"/api/exams/verify-admit/{mcq_exam}/{student.id}").json()
        assert verified["verified"] is True
        assert verified["studentName"] == "student1"

    def test_no_card_without_enrollment(self, client, mcq_exam, account):
        outsider = account("student2")
        assert client.get(f"/api/exams/exam/{mcq_exam}/admit-card", headers=outsider.headers).status_code == 403
        assert client.get(f"/api/exams/verify-admit/{mcq_exam}/{outsider.id}").status_code == 404
