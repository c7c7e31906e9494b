import random
from datetime import date

from auth_utils import decrypt_password
from constants import ClassLevel, Subject
from example_data import ensure_admin, main, populate_example_users, unique_email


def test_populate_example_users(db):
    created = populate_example_users(db, 6, 3, 1, random.Random(7))

    assert len(created) == 10
    assert len(db.get_users_by_role("student")) == 6
    assert len(db.get_users_by_role("teacher")) == 3
    assert len(db.get_users_by_role("admin")) == 1

    emails = [user["email"] for user, _ in created]
    assert len(set(e.lower() for e in emails)) == len(emails)

    for user, password in created:
        assert decrypt_password(user["password"]) == password
        assert len(password) == 12


def test_generated_users_respect_role_fields(db):
    created = populate_example_users(db, 4, 4, 0, random.Random(3))
    today = date.today()

    for user, _ in created:
        age = today.year - date.fromisoformat(user["birth_date"]).year
        if user["role"] == "student":
            assert user["email"].endswith("@student.school.edu")
            assert user["class_id"] in [c.value for c in ClassLevel]
            assert user["subjects"] == []
            assert 9 <= age <= 19
        else:
            assert user["email"].endswith("@teacher.school.edu")
            assert user["class_id"] is None
            assert 2 <= len(user["subjects"]) <= 4
            assert set(user["subjects"]) <= {s.value for s in Subject}
            assert 1 <= len(user["taught_classes"]) <= 3


def test_unique_email_appends_counter(db, make_user):
    assert unique_email(db, "admin", "school.edu") == "admin@school.edu"
    make_user("Admin", "admin@school.edu", "admin")
    make_user("Admin Two", "admin1@school.edu", "admin")
    assert unique_email(db, "admin", "school.edu") == "admin2@school.edu"


def test_ensure_admin_only_on_empty_store(db):
    user, password = ensure_admin(db, "admin@school.edu")
    assert user["role"] == "admin"
    assert decrypt_password(user["password"]) == password

    assert ensure_admin(db, "other@school.edu", "whatever123") is None
    assert len(db.get_all_users()) == 1


def test_ensure_admin_uses_given_password(db):
    user, password = ensure_admin(db, "admin@school.edu", "ChosenPass1!")
    assert password == "ChosenPass1!"
    assert decrypt_password(user["password"]) == "ChosenPass1!"


def test_cli_seeds_data_dir(tmp_path, capsys):
    data_dir = tmp_path / "seeded"
    main(["--students", "2", "--teachers", "1", "--admins", "0", "--data-dir", str(data_dir), "--seed", "1"])

    output = capsys.readouterr().out.strip().splitlines()
    assert len(output) == 3
    assert (data_dir / "users.json").exists()
