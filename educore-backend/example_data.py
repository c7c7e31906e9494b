"""
Example data for a fresh installation.

Generates students, teachers and admins with random names, birth dates,
classes and subjects, each with a generated password. Run directly to seed
a data directory and print the credentials:

    python example_data.py --students 30 --teachers 8 --admins 1
"""

import argparse
import logging
import random
from datetime import date, timedelta
from typing import List, Optional, Tuple, Dict, Any

from auth_utils import encrypt_password, generate_password
from constants import ClassLevel, Role, Subject

logger = logging.getLogger(__name__)

FIRST_NAMES = [
    "James", "Mary", "John", "Patricia", "Robert", "Jennifer",
    "Michael", "Linda", "William", "Elizabeth", "David", "Barbara",
    "Richard", "Susan", "Joseph", "Jessica", "Thomas", "Sarah",
    "Charles", "Karen", "Christopher", "Nancy", "Daniel", "Lisa",
    "Matthew", "Betty", "Anthony", "Margaret", "Mark", "Sandra",
    "Donald", "Ashley", "Steven", "Kimberly", "Paul", "Emily",
    "Andrew", "Donna", "Joshua", "Michelle", "Kenneth", "Dorothy",
]
LAST_NAMES = [
    "Smith", "Johnson", "Williams", "Brown", "Jones", "Garcia",
    "Miller", "Davis", "Rodriguez", "Martinez", "Hernandez", "Lopez",
    "Gonzalez", "Wilson", "Anderson", "Thomas", "Taylor", "Moore",
    "Jackson", "Martin", "Lee", "Perez", "Thompson", "White",
    "Harris", "Sanchez", "Clark", "Ramirez", "Lewis", "Robinson",
]

STUDENT_DOMAIN = "student.school.edu"
TEACHER_DOMAIN = "teacher.school.edu"
ADMIN_DOMAIN = "school.edu"


def random_birth_date(rng: random.Random, min_age: int, max_age: int) -> date:
    years = rng.randint(min_age, max_age)
    return date.today() - timedelta(days=years * 365 + rng.randint(0, 364))


def unique_email(db, base: str, domain: str) -> str:
    """base@domain, or base1@domain, base2@domain... when taken"""
    email = f"{base}@{domain}"
    counter = 1
    while db.user_exists(email=email):
        email = f"{base}{counter}@{domain}"
        counter += 1
    return email


def generate_student(db, rng: random.Random) -> Dict[str, Any]:
    first, last = rng.choice(FIRST_NAMES), rng.choice(LAST_NAMES)
    return {
        "name": f"{first} {last}",
        "email": unique_email(db, f"{first.lower()}.{last.lower()}", STUDENT_DOMAIN),
        "role": Role.STUDENT.value,
        "birth_date": random_birth_date(rng, 10, 18),
        "class_id": rng.choice(list(ClassLevel)).value,
    }


def generate_teacher(db, rng: random.Random) -> Dict[str, Any]:
    first, last = rng.choice(FIRST_NAMES), rng.choice(LAST_NAMES)
    subjects = rng.sample([s.value for s in Subject], rng.randint(2, 4))
    classes = rng.sample([c.value for c in ClassLevel], rng.randint(1, 3))
    return {
        "name": f"{first} {last}",
        "email": unique_email(db, f"{first[0].lower()}{last.lower()}", TEACHER_DOMAIN),
        "role": Role.TEACHER.value,
        "birth_date": random_birth_date(rng, 25, 65),
        "subjects": subjects,
        "taught_classes": classes,
    }


def generate_admin(db, rng: random.Random) -> Dict[str, Any]:
    first, last = rng.choice(FIRST_NAMES), rng.choice(LAST_NAMES)
    return {
        "name": f"{first} {last}",
        "email": unique_email(db, "admin", ADMIN_DOMAIN),
        "role": Role.ADMIN.value,
        "birth_date": random_birth_date(rng, 30, 50),
    }


def populate_example_users(
    db,
    student_count: int,
    teacher_count: int,
    admin_count: int,
    rng: Optional[random.Random] = None,
) -> List[Tuple[Dict[str, Any], str]]:
    """Create example users; returns (user, plaintext password) pairs"""
    rng = rng or random.Random()
    created = []
    plan = (
        [generate_student] * student_count
        + [generate_teacher] * teacher_count
        + [generate_admin] * admin_count
    )
    for generator in plan:
        password = generate_password(12)
        user = db.create_user(generator(db, rng), encrypt_password(password))
        created.append((user, password))

    logger.info(f"✅ Generated {student_count} students, {teacher_count} teachers, {admin_count} admins")
    return created


def ensure_admin(db, email: str, password: Optional[str] = None, name: str = "Administrator") -> Optional[Tuple[Dict[str, Any], str]]:
    """Create a bootstrap admin when no users exist; returns (user, password) if created"""
    if db.get_all_users():
        return None

    password = password or generate_password(12)
    user = db.create_user(
        {"name": name, "email": email, "role": Role.ADMIN.value},
        encrypt_password(password),
    )
    logger.info(f"✅ Created bootstrap admin {email}")
    return user, password


def main(argv=None):
    from db_manager import DatabaseManager

    parser = argparse.ArgumentParser(description="Populate an EduCore data directory with example users")
    parser.add_argument("--students", type=int, default=20)
    parser.add_argument("--teachers", type=int, default=5)
    parser.add_argument("--admins", type=int, default=1)
    parser.add_argument("--data-dir", default="data")
    parser.add_argument("--seed", type=int, default=None)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    db = DatabaseManager(base_dir=args.data_dir)
    created = populate_example_users(db, args.students, args.teachers, args.admins, random.Random(args.seed))

    for user, password in created:
        print(f"{user['role']:<8} {user['email']:<45} {password}")


if __name__ == "__main__":
    main()
