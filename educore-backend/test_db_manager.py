import json
import os
from datetime import date, datetime

import pytest

from db_manager import DatabaseManager


def test_collections_start_empty_and_files_are_created(db):
    assert db.get_all_users() == []
    assert db.get_all_homework() == []
    assert os.path.exists(db.get_collection_file("users"))


def test_corrupt_collection_loads_as_empty(db):
    with open(db.get_collection_file("homeworks"), "w", encoding="utf-8") as f:
        f.write("{not json")
    assert db.get_all_homework() == []

    with open(db.get_collection_file("certificates"), "w", encoding="utf-8") as f:
        json.dump({"not": "a list"}, f)
    assert db.get_all_certificates() == []


def test_unknown_collection_is_rejected(db):
    with pytest.raises(ValueError):
        db.get_collection_file("grades")


def test_write_leaves_no_temp_file(db, make_user):
    make_user("Anna Kovacs", "anna@student.school.edu", "student", class_id="10.A")
    assert not os.path.exists(db.get_collection_file("users") + ".tmp")


# ==================== USERS ====================

def test_user_ids_are_sequential(db, make_user):
    first = make_user("Anna Kovacs", "anna@student.school.edu", "student", class_id="10.A")
    second = make_user("Bela Nagy", "bnagy@teacher.school.edu", "teacher", subjects=["Physics"], taught_classes=["10.A"])
    assert (first["id"], second["id"]) == ("1", "2")

    db.delete_user("2")
    assert db.generate_next_user_id() == "2"


def test_duplicate_email_is_case_insensitive(make_user):
    make_user("Anna Kovacs", "anna@student.school.edu", "student")
    with pytest.raises(ValueError, match="already exists"):
        make_user("Other Anna", "ANNA@student.school.edu", "student")


def test_user_exists_by_id_or_email(db, make_user):
    user = make_user("Anna Kovacs", "anna@student.school.edu", "student")
    assert db.user_exists(user_id=user["id"])
    assert db.user_exists(email="Anna@Student.School.edu")
    assert not db.user_exists(user_id="99")
    assert not db.user_exists(email="nobody@school.edu")


@pytest.mark.parametrize("role, fields, message", [
    ("student", {"subjects": ["Art"]}, "Only teachers"),
    ("admin", {"taught_classes": ["9.A"]}, "Only teachers"),
    ("teacher", {"class_id": "9.A"}, "Only students"),
    ("janitor", {}, "Invalid role"),
])
def test_role_specific_fields_are_enforced(make_user, role, fields, message):
    with pytest.raises(ValueError, match=message):
        make_user("Someone", "someone@school.edu", role, **fields)


def test_birth_date_is_stored_as_iso(make_user):
    user = make_user("Anna Kovacs", "anna@student.school.edu", "student", birth_date=date(2009, 3, 14))
    assert user["birth_date"] == "2009-03-14"


def test_lookups_by_role_and_class(db, make_user):
    make_user("Anna Kovacs", "anna@student.school.edu", "student", class_id="10.A")
    make_user("Bence Toth", "bence@student.school.edu", "student", class_id="11.B")
    make_user("Bela Nagy", "bnagy@teacher.school.edu", "teacher", subjects=["Physics"], taught_classes=["10.A", "11.B"])

    assert [u["name"] for u in db.get_students_by_class("10.A")] == ["Anna Kovacs"]
    assert [u["name"] for u in db.get_teachers_by_class("11.B")] == ["Bela Nagy"]
    assert len(db.get_users_by_role("student")) == 2
    assert db.get_user_by_email("BNAGY@teacher.school.edu")["role"] == "teacher"


def test_update_user_role_change_clears_old_fields(db, make_user):
    user = make_user("Anna Kovacs", "anna@student.school.edu", "student", class_id="10.A")

    updated = db.update_user(user["id"], role="teacher", subjects=["Art"], taught_classes=["9.A"])

    assert updated["class_id"] is None
    assert updated["subjects"] == ["Art"]
    assert updated["id"] == user["id"]
    assert "updated_at" in updated
    assert db.get_user(user["id"])["role"] == "teacher"


def test_update_user_rejects_invalid_combination_and_missing_user(db, make_user):
    user = make_user("Anna Kovacs", "anna@student.school.edu", "student", class_id="10.A")
    with pytest.raises(ValueError, match="Only teachers"):
        db.update_user(user["id"], subjects=["Art"])
    with pytest.raises(ValueError, match="not found"):
        db.update_user("42", name="Ghost")


def test_update_user_cannot_take_another_email(db, make_user):
    make_user("Anna Kovacs", "anna@student.school.edu", "student")
    bence = make_user("Bence Toth", "bence@student.school.edu", "student")
    with pytest.raises(ValueError, match="already exists"):
        db.update_user(bence["id"], email="anna@student.school.edu")


def test_delete_user_cascades_but_keeps_logs(db, make_user):
    student = make_user("Anna Kovacs", "anna@student.school.edu", "student", class_id="10.A")
    homework = db.create_homework({"description": "Essay", "deadline": "2099-01-01T08:00:00", "subject": "Literature", "class_id": "10.A"})
    db.add_submission(homework["id"], student["id"], "/files/essay.pdf")
    db.create_certificate(student["id"], "2024-03-01", "2024-03-02")
    db.log_login(student["id"])

    assert db.delete_user(student["id"])
    assert not db.delete_user(student["id"])
    assert db.get_certificates_by_user(student["id"]) == []
    assert not db.has_submitted(homework["id"], student["id"])
    assert len(db.get_logs_for_user(student["id"])) == 1


# ==================== HOMEWORK ====================

def test_homework_requires_deadline(db):
    with pytest.raises(ValueError, match="deadline"):
        db.create_homework({"description": "Essay", "subject": "Art", "class_id": "9.A"})


def test_homework_queries_are_case_insensitive(db):
    db.create_homework({"description": "Essay", "deadline": datetime(2099, 1, 1, 8), "subject": "Literature", "class_id": "10.A"})
    db.create_homework({"description": "Lab", "deadline": datetime(2099, 1, 1, 8), "subject": "Physics", "class_id": "11.B"})

    assert len(db.get_homework_by_class("10.a")) == 1
    assert len(db.get_homework_by_subject("physics")) == 1
    assert [h["description"] for h in db.get_homework_for_teacher(["physics"], ["11.B", "10.A"])] == ["Lab"]


def test_update_homework_preserves_submissions(db):
    homework = db.create_homework({"description": "Essay", "deadline": "2099-01-01T08:00:00", "subject": "Art", "class_id": "9.A"})
    db.add_submission(homework["id"], "7", "/files/a.pdf")

    updated = db.update_homework(homework["id"], description="Longer essay", submissions={})

    assert updated["description"] == "Longer essay"
    assert "7" in updated["submissions"]
    assert db.get_homework(homework["id"])["submissions"]["7"]["file_path"] == "/files/a.pdf"

    with pytest.raises(ValueError, match="not found"):
        db.update_homework("missing", description="x")


def test_submission_grading_lifecycle(db):
    homework = db.create_homework({"description": "Essay", "deadline": "2099-01-01T08:00:00", "subject": "Art", "class_id": "9.A"})
    hw_id = homework["id"]

    assert db.get_submission_grade(hw_id, "7") == "-"
    assert not db.set_submission_grade(hw_id, "7", "5")

    db.add_submission(hw_id, "7", "/files/a.pdf", datetime(2098, 12, 31, 20, 15))
    assert db.get_submission_date(hw_id, "7") == "2098-12-31T20:15:00"
    assert db.get_submission_grade(hw_id, "7") == "-"

    assert db.set_submission_grade(hw_id, "7", "5")
    assert db.get_submission_grade(hw_id, "7") == "5"

    # resubmitting resets the grade
    db.add_submission(hw_id, "7", "/files/b.pdf")
    assert db.get_submission(hw_id, "7")["grade"] == "-"
    assert list(db.get_all_submissions(hw_id)) == ["7"]

    assert db.remove_submission(hw_id, "7")
    assert not db.remove_submission(hw_id, "7")
    assert not db.has_submitted(hw_id, "7")


def test_submission_to_missing_homework_fails(db):
    with pytest.raises(ValueError, match="not found"):
        db.add_submission("missing", "7", "/files/a.pdf")


def test_delete_homework(db):
    homework = db.create_homework({"description": "Essay", "deadline": "2099-01-01T08:00:00", "subject": "Art", "class_id": "9.A"})
    assert db.delete_homework(homework["id"])
    assert not db.delete_homework(homework["id"])


# ==================== CERTIFICATES ====================

def test_certificate_defaults_and_date_order(db):
    certificate = db.create_certificate("7", date(2024, 3, 1), "2024-03-04")
    assert certificate["file_path"] == "-"
    assert certificate["certificate_type"] == "-"
    assert certificate["approved_status"] is False

    with pytest.raises(ValueError, match="before start"):
        db.create_certificate("7", "2024-03-04", "2024-03-01")
    with pytest.raises(ValueError, match="YYYY-MM-DD"):
        db.create_certificate("7", "March first", "2024-03-01")


def test_certificate_approval_requires_file(db):
    certificate = db.create_certificate("7", "2024-03-01", "2024-03-02")

    with pytest.raises(ValueError, match="no file uploaded"):
        db.approve_certificate(certificate["id"])

    db.upload_certificate_file(certificate["id"], "/files/doctor.pdf", "Medical")
    approved = db.approve_certificate(certificate["id"])
    assert approved["approved_status"] is True
    assert approved["certificate_type"] == "Medical"

    with pytest.raises(ValueError, match="already approved"):
        db.approve_certificate(certificate["id"])
    with pytest.raises(ValueError, match="already approved"):
        db.upload_certificate_file(certificate["id"], "/files/other.pdf")


def test_certificate_lookups_and_delete(db):
    first = db.create_certificate("7", "2024-03-01", "2024-03-02")
    db.create_certificate("8", "2024-03-01", "2024-03-02")

    assert [c["id"] for c in db.get_certificates_by_user("7")] == [first["id"]]
    assert db.delete_certificate(first["id"])
    assert db.get_certificate(first["id"]) is None
    with pytest.raises(ValueError, match="not found"):
        db.approve_certificate(first["id"])


# ==================== LOGS, PREFERENCES, MAINTENANCE ====================

def test_login_logs(db):
    db.log_login("1", "Firefox on Linux")
    db.log_logout("1")
    db.log_login("2")

    logs = db.get_logs_for_user("1")
    assert [log["action"] for log in logs] == ["LOGIN", "LOGOUT"]
    assert logs[0]["device"] == "Firefox on Linux"
    assert len(db.get_all_logs()) == 3


def test_theme_defaults_to_light_and_persists(db):
    assert db.get_theme() == "Light"
    assert os.path.exists(db.get_preference_file())

    assert db.save_theme("dark") == "Dark"
    assert DatabaseManager(db.base_dir).get_theme() == "Dark"

    with pytest.raises(ValueError):
        db.save_theme("Solarized")


def test_unreadable_theme_falls_back_to_light(db):
    with open(db.get_preference_file(), "w", encoding="utf-8") as f:
        f.write("garbage")
    assert db.get_theme() == "Light"


def test_backup_and_stats(db, make_user, tmp_path):
    student = make_user("Anna Kovacs", "anna@student.school.edu", "student", class_id="10.A")
    make_user("Admin", "admin@school.edu", "admin")
    homework = db.create_homework({"description": "Essay", "deadline": "2099-01-01T08:00:00", "subject": "Art", "class_id": "10.A"})
    db.add_submission(homework["id"], student["id"], "/files/a.pdf")
    db.create_certificate(student["id"], "2024-03-01", "2024-03-02")

    stats = db.get_database_stats()
    assert stats["database"] == "file"
    assert (stats["total_users"], stats["students"], stats["admins"]) == (2, 1, 1)
    assert stats["total_submissions"] == 1
    assert stats["pending_certificates"] == 1

    backup_path = db.backup_data(str(tmp_path / "backups"))
    assert os.path.exists(os.path.join(backup_path, "users.json"))


@pytest.mark.parametrize("collection, record", [
    ("users", {"id": "1", "name": "Anna Kovacs", "email": "anna@student.school.edu", "password": "abc=",
               "birth_date": "2010-02-03", "role": "student", "class_id": "10.A", "subjects": [], "taught_classes": []}),
    ("homeworks", {"id": "h1", "description": "Essay", "deadline": "2099-01-01T08:00:00", "subject": "Art", "class_id": "9.A",
                   "submissions": {"1": {"file_path": "/a.pdf", "grade": "4", "submission_date": "2098-12-01T10:00:00"}}}),
    ("certificates", {"id": "c1", "user_id": "1", "file_path": "-", "start_date": "2024-03-01", "end_date": "2024-03-02",
                      "certificate_type": "-", "approved_status": False}),
    ("login_logs", {"id": "l1", "user_id": "1", "timestamp": "2024-03-01T08:00:00", "action": "LOGIN", "device": None}),
])
def test_save_load_preserves_all_fields(db, collection, record):
    db.save_collection(collection, [record])
    assert DatabaseManager(db.base_dir).load_collection(collection) == [record]


def test_generated_record_ids_are_unique(db):
    ids = set()
    for _ in range(20):
        ids.add(db.create_homework({"description": "x", "deadline": "2099-01-01T08:00:00", "subject": "Art", "class_id": "9.A"})["id"])
        ids.add(db.create_certificate("1", "2024-03-01", "2024-03-02")["id"])
        ids.add(db.log_login("1")["id"])
    assert len(ids) == 60


def test_update_user_requires_email_and_name(db, make_user):
    user = make_user("Anna Kovacs", "anna@student.school.edu", "student", class_id="10.A")
    with pytest.raises(ValueError, match="Email is required"):
        db.update_user(user["id"], email=None)
    with pytest.raises(ValueError, match="Name is required"):
        db.update_user(user["id"], name="  ")
    assert db.get_user(user["id"])["email"] == "anna@student.school.edu"


def test_class_lookups_are_case_insensitive(db, make_user):
    make_user("Anna Kovacs", "anna@student.school.edu", "student", class_id="10.A")
    make_user("Bela Nagy", "bnagy@teacher.school.edu", "teacher", subjects=["Physics"], taught_classes=["10.A"])

    assert [u["name"] for u in db.get_students_by_class("10.a")] == ["Anna Kovacs"]
    assert [u["name"] for u in db.get_teachers_by_class(" 10.a ")] == ["Bela Nagy"]
