import os
import uuid

import pytest
from dotenv import load_dotenv

load_dotenv()

MONGO_URI = os.getenv("MONGO_URI")

pytestmark = pytest.mark.skipif(not MONGO_URI, reason="MONGO_URI not set")


@pytest.fixture
def mongo_db():
    """A throwaway database on the configured server, dropped afterwards"""
    from mongodb_manager import MongoDBManager

    db_name = f"educore_test_{uuid.uuid4().hex[:8]}"
    db = MongoDBManager(mongo_uri=MONGO_URI, db_name=db_name)
    yield db
    db.client.drop_database(db_name)
    db.client.close()


def test_mongodb_connection(mongo_db):
    """Test MongoDB connection and basic operations"""
    stats = mongo_db.get_database_stats()
    print("\n📊 Database Statistics:")
    for key, value in stats.items():
        print(f"  {key}: {value}")

    assert stats["database"] == "mongodb"
    assert stats["total_users"] == 0


def test_users_and_homework_round_trip(mongo_db):
    student = mongo_db.create_user(
        {"name": "Anna Kovacs", "email": "anna.kovacs@student.school.edu", "role": "student", "class_id": "10.A"},
        "encrypted",
    )
    assert student["id"] == "1"
    assert mongo_db.get_user_by_email("ANNA.KOVACS@student.school.edu")["id"] == "1"

    with pytest.raises(ValueError):
        mongo_db.create_user({"name": "Dup", "email": "Anna.Kovacs@student.school.edu", "role": "student"}, "x")

    homework = mongo_db.create_homework({
        "description": "Exercises 1-5",
        "deadline": "2099-01-01T12:00:00",
        "subject": "Mathematics",
        "class_id": "10.A",
    })
    mongo_db.add_submission(homework["id"], student["id"], "/files/anna.pdf")
    mongo_db.update_homework(homework["id"], description="Exercises 1-6")

    assert mongo_db.get_submission_grade(homework["id"], student["id"]) == "-"
    assert mongo_db.has_submitted(homework["id"], student["id"])
    assert mongo_db.get_homework(homework["id"])["description"] == "Exercises 1-6"

    assert mongo_db.delete_user(student["id"])
    assert not mongo_db.has_submitted(homework["id"], student["id"])
