import json
import logging
import os
import shutil
import uuid
from datetime import date, datetime, timezone
from typing import Optional, Dict, Any, List

from constants import (
    COLLECTION_FILES,
    PLACEHOLDER,
    PREFERENCE_FILE,
    ROLES,
    LoginAction,
    Role,
    Theme,
)

logger = logging.getLogger(__name__)

TEACHER_ONLY_FIELDS = ("subjects", "taught_classes")
STUDENT_ONLY_FIELDS = ("class_id",)


# ==================== SHARED HELPERS ====================

def now_utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_iso(value: Any) -> Any:
    """Serialize date/datetime values; anything else is returned unchanged"""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def to_date(value: Any) -> date:
    """Parse a date from a date, datetime or ISO string"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except (TypeError, ValueError):
        raise ValueError("Invalid date format. Please use YYYY-MM-DD.")


def same_class(a: Any, b: Any) -> bool:
    """Class ids match case-insensitively"""
    if a is None or b is None:
        return False
    return str(enum_value(a)).strip().lower() == str(enum_value(b)).strip().lower()


def user_in_class(user: Dict[str, Any], class_id: Any) -> bool:
    """A student's class or one of a teacher's taught classes"""
    if same_class(user.get("class_id"), class_id):
        return True
    return any(same_class(c, class_id) for c in user.get("taught_classes") or [])


def placeholder_if_blank(value: Optional[str]) -> str:
    if value is None or not str(value).strip():
        return PLACEHOLDER
    return value


def certificate_has_file(cert: Dict[str, Any]) -> bool:
    file_path = cert.get("file_path")
    return bool(file_path) and file_path != PLACEHOLDER and bool(str(file_path).strip())


def certificate_has_type(cert: Dict[str, Any]) -> bool:
    cert_type = cert.get("certificate_type")
    return bool(cert_type) and cert_type != PLACEHOLDER and bool(str(cert_type).strip())


def validate_user_roles(user_data: Dict[str, Any]):
    """Raise ValueError when role-specific fields don't match the role"""
    role = user_data.get("role")
    if role not in ROLES:
        raise ValueError(f"Invalid role: {role}")

    if role != Role.TEACHER.value:
        for field in TEACHER_ONLY_FIELDS:
            if user_data.get(field):
                raise ValueError(f"Only teachers can have {field}")

    if role != Role.STUDENT.value:
        for field in STUDENT_ONLY_FIELDS:
            if user_data.get(field):
                raise ValueError(f"Only students can have {field}")


def build_user_record(user_data: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize incoming user data into the stored shape"""
    return {
        "name": user_data.get("name", ""),
        "email": (user_data.get("email") or "").strip(),
        "birth_date": to_iso(user_data.get("birth_date")),
        "role": enum_value(user_data.get("role")),
        "class_id": enum_value(user_data.get("class_id")) or None,
        "subjects": [enum_value(s) for s in user_data.get("subjects") or []],
        "taught_classes": [enum_value(c) for c in user_data.get("taught_classes") or []],
    }


def normalize_user_updates(current: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """Merge updates into a copy of the user, clearing fields the new role can't hold"""
    updates = dict(updates)
    updates.pop("id", None)
    updates.pop("created_at", None)

    for key in ("role", "class_id"):
        if key in updates:
            updates[key] = enum_value(updates[key])
    for key in TEACHER_ONLY_FIELDS:
        if key in updates:
            updates[key] = [enum_value(v) for v in updates[key] or []]
    if "birth_date" in updates:
        updates["birth_date"] = to_iso(updates["birth_date"])
    if "email" in updates and updates["email"]:
        updates["email"] = updates["email"].strip()

    merged = dict(current)
    merged.update(updates)

    # A role change drops the old role's fields unless the caller set them explicitly
    if "role" in updates and updates["role"] != current.get("role"):
        if updates["role"] != Role.TEACHER.value:
            for field in TEACHER_ONLY_FIELDS:
                if field not in updates:
                    merged[field] = []
        if updates["role"] != Role.STUDENT.value and "class_id" not in updates:
            merged["class_id"] = None

    if not (merged.get("email") or "").strip():
        raise ValueError("Email is required")
    if not (merged.get("name") or "").strip():
        raise ValueError("Name is required")

    validate_user_roles(merged)
    merged["updated_at"] = now_utc_iso()
    return merged


def build_homework_record(homework_data: Dict[str, Any]) -> Dict[str, Any]:
    if not homework_data.get("deadline"):
        raise ValueError("Homework deadline is required")
    return {
        "id": str(uuid.uuid4()),
        "description": homework_data.get("description", ""),
        "deadline": to_iso(homework_data.get("deadline")),
        "subject": enum_value(homework_data.get("subject", "")),
        "class_id": enum_value(homework_data.get("class_id", "")),
        "created_by": homework_data.get("created_by"),
        "submissions": {},
        "created_at": now_utc_iso(),
    }


def build_certificate_record(
    user_id: str,
    start_date: Any,
    end_date: Any,
    file_path: Optional[str] = None,
    certificate_type: Optional[str] = None,
) -> Dict[str, Any]:
    start = to_date(start_date)
    end = to_date(end_date)
    if end < start:
        raise ValueError("End date cannot be before start date.")

    return {
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "file_path": placeholder_if_blank(file_path),
        "start_date": start.isoformat(),
        "end_date": end.isoformat(),
        "certificate_type": placeholder_if_blank(certificate_type),
        "approved_status": False,
        "created_at": now_utc_iso(),
    }


def build_login_log(user_id: str, action: Any, device: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "timestamp": datetime.now().isoformat(),
        "action": LoginAction(enum_value(action)).value,
        "device": device,
    }


def parse_theme(theme: Any) -> Theme:
    if isinstance(theme, Theme):
        return theme
    for candidate in Theme:
        if isinstance(theme, str) and candidate.value.lower() == theme.strip().lower():
            return candidate
    raise ValueError(f"Unknown theme: {theme}")


class DatabaseManager:
    """Manages file-based JSON storage: one whole-file array per collection"""

    def __init__(self, base_dir: str = "data"):
        self.base_dir = base_dir
        os.makedirs(self.base_dir, exist_ok=True)

    def get_collection_file(self, name: str) -> str:
        """Get the JSON file path for a collection"""
        if name not in COLLECTION_FILES:
            raise ValueError(f"Unknown collection: {name}")
        return os.path.join(self.base_dir, COLLECTION_FILES[name])

    def get_preference_file(self) -> str:
        return os.path.join(self.base_dir, PREFERENCE_FILE)

    def read_json(self, file_path: str) -> Optional[Any]:
        """Read JSON file safely"""
        try:
            if not os.path.exists(file_path):
                return None
            with open(file_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except Exception as e:
            logger.error(f"❌ Error reading {file_path}: {e}")
            return None

    def write_json(self, file_path: str, data: Any):
        """Write JSON through a temp file so the target is replaced in one step"""
        tmp_path = f"{file_path}.tmp"
        try:
            os.makedirs(os.path.dirname(file_path) or ".", exist_ok=True)
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, file_path)
        except Exception as e:
            logger.error(f"❌ Error writing {file_path}: {e}")
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _ensure_file(self, file_path: str, default: Any):
        if not os.path.exists(file_path):
            self.write_json(file_path, default)

    def load_collection(self, name: str) -> List[Dict[str, Any]]:
        """Load a whole collection; missing or corrupt files load as an empty list"""
        file_path = self.get_collection_file(name)
        try:
            self._ensure_file(file_path, [])
        except OSError:
            return []

        data = self.read_json(file_path)
        if not isinstance(data, list):
            if data is not None:
                logger.warning(f"⚠️ {file_path} does not hold a JSON array, treating as empty")
            return []
        return [item for item in data if isinstance(item, dict)]

    def save_collection(self, name: str, items: List[Dict[str, Any]]):
        """Overwrite a whole collection"""
        self.write_json(self.get_collection_file(name), list(items))

    @staticmethod
    def _find_index(items: List[Dict[str, Any]], record_id: str) -> Optional[int]:
        for i, item in enumerate(items):
            if str(item.get("id")) == str(record_id):
                return i
        return None

    def _find(self, name: str, record_id: str) -> Optional[Dict[str, Any]]:
        for item in self.load_collection(name):
            if str(item.get("id")) == str(record_id):
                return item
        return None

    # ==================== USER OPERATIONS ====================

    @staticmethod
    def _next_user_id(users: List[Dict[str, Any]]) -> str:
        max_id = 0
        for user in users:
            user_id = str(user.get("id", ""))
            if user_id.isdigit():
                max_id = max(max_id, int(user_id))
        return str(max_id + 1)

    @staticmethod
    def _email_taken(users: List[Dict[str, Any]], email: str, exclude_id: Optional[str] = None) -> bool:
        email = email.strip().lower()
        return any(
            (u.get("email") or "").lower() == email and str(u.get("id")) != str(exclude_id)
            for u in users
        )

    def generate_next_user_id(self) -> str:
        """Next sequential user id (highest numeric id + 1)"""
        return self._next_user_id(self.load_collection("users"))

    def user_exists(self, user_id: Optional[str] = None, email: Optional[str] = None) -> bool:
        """Check if a user with the given id or email exists"""
        for user in self.load_collection("users"):
            if user_id is not None and str(user.get("id")) == str(user_id):
                return True
            if email and (user.get("email") or "").lower() == email.strip().lower():
                return True
        return False

    def create_user(self, user_data: Dict[str, Any], password: str) -> Dict[str, Any]:
        """Create a user with the next sequential id; password must already be encrypted"""
        record = build_user_record(user_data)
        validate_user_roles(record)
        if not record["email"]:
            raise ValueError("Email is required")

        users = self.load_collection("users")
        if self._email_taken(users, record["email"]):
            raise ValueError("User with this email already exists")

        user = {"id": self._next_user_id(users), **record, "password": password, "created_at": now_utc_iso()}
        users.append(user)
        self.save_collection("users", users)
        logger.info(f"✅ Created {user['role']} {user['id']} ({user['email']})")
        return user

    def get_all_users(self) -> List[Dict[str, Any]]:
        return self.load_collection("users")

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self._find("users", user_id)

    def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """Get user by email (case-insensitive)"""
        if not email:
            return None
        email = email.strip().lower()
        for user in self.load_collection("users"):
            if (user.get("email") or "").lower() == email:
                return user
        return None

    def get_users_by_role(self, role: str) -> List[Dict[str, Any]]:
        role = enum_value(role)
        return [u for u in self.load_collection("users") if u.get("role") == role]

    def get_students_by_class(self, class_id: str) -> List[Dict[str, Any]]:
        return [u for u in self.get_users_by_role(Role.STUDENT.value) if same_class(u.get("class_id"), class_id)]

    def get_teachers_by_class(self, class_id: str) -> List[Dict[str, Any]]:
        return [
            u for u in self.get_users_by_role(Role.TEACHER.value)
            if any(same_class(c, class_id) for c in u.get("taught_classes") or [])
        ]

    def update_user(self, user_id: str, **updates) -> Dict[str, Any]:
        """Update user data"""
        users = self.load_collection("users")
        index = self._find_index(users, user_id)
        if index is None:
            raise ValueError(f"User {user_id} not found")

        user_data = normalize_user_updates(users[index], updates)
        if self._email_taken(users, user_data.get("email") or "", exclude_id=user_id):
            raise ValueError("User with this email already exists")

        users[index] = user_data
        self.save_collection("users", users)
        return user_data

    def delete_user(self, user_id: str) -> bool:
        """Delete user with their certificates and homework submissions; login logs are kept"""
        users = self.load_collection("users")
        remaining = [u for u in users if str(u.get("id")) != str(user_id)]
        if len(remaining) == len(users):
            return False
        self.save_collection("users", remaining)

        certificates = self.load_collection("certificates")
        kept = [c for c in certificates if c.get("user_id") != user_id]
        if len(kept) != len(certificates):
            self.save_collection("certificates", kept)

        homeworks = self.load_collection("homeworks")
        touched = False
        for homework in homeworks:
            submissions = homework.get("submissions") or {}
            if user_id in submissions:
                del submissions[user_id]
                touched = True
        if touched:
            self.save_collection("homeworks", homeworks)

        logger.info(f"🗑️ Deleted user {user_id}")
        return True

    # ==================== HOMEWORK OPERATIONS ====================

    def create_homework(self, homework_data: Dict[str, Any]) -> Dict[str, Any]:
        homework = build_homework_record(homework_data)
        homeworks = self.load_collection("homeworks")
        homeworks.append(homework)
        self.save_collection("homeworks", homeworks)
        logger.info(f"✅ Created homework {homework['id']} for {homework['class_id']} ({homework['subject']})")
        return homework

    def get_all_homework(self) -> List[Dict[str, Any]]:
        return self.load_collection("homeworks")

    def get_homework(self, homework_id: str) -> Optional[Dict[str, Any]]:
        return self._find("homeworks", homework_id)

    def get_homework_by_class(self, class_id: str) -> List[Dict[str, Any]]:
        class_id = str(enum_value(class_id)).lower()
        return [h for h in self.load_collection("homeworks") if str(h.get("class_id", "")).lower() == class_id]

    def get_homework_by_subject(self, subject: str) -> List[Dict[str, Any]]:
        subject = str(enum_value(subject)).lower()
        return [h for h in self.load_collection("homeworks") if str(h.get("subject", "")).lower() == subject]

    def get_homework_for_teacher(self, subjects: List[str], classes: List[str]) -> List[Dict[str, Any]]:
        """Homework matching one of the teacher's subjects and one of their classes"""
        subjects = {str(s).lower() for s in subjects or []}
        classes = {str(c).lower() for c in classes or []}
        return [
            h for h in self.load_collection("homeworks")
            if str(h.get("subject", "")).lower() in subjects
            and str(h.get("class_id", "")).lower() in classes
        ]

    def update_homework(self, homework_id: str, **updates) -> Dict[str, Any]:
        """Update homework; the existing submissions map is always preserved"""
        homeworks = self.load_collection("homeworks")
        index = self._find_index(homeworks, homework_id)
        if index is None:
            raise ValueError(f"Homework {homework_id} not found")

        updates.pop("id", None)
        updates.pop("submissions", None)
        updates = {k: to_iso(enum_value(v)) for k, v in updates.items()}

        existing = homeworks[index]
        homework = {**existing, **updates}
        homework["submissions"] = existing.get("submissions") or {}
        homework["updated_at"] = now_utc_iso()

        homeworks[index] = homework
        self.save_collection("homeworks", homeworks)
        return homework

    def delete_homework(self, homework_id: str) -> bool:
        homeworks = self.load_collection("homeworks")
        remaining = [h for h in homeworks if str(h.get("id")) != str(homework_id)]
        if len(remaining) == len(homeworks):
            return False
        self.save_collection("homeworks", remaining)
        return True

    def add_submission(
        self,
        homework_id: str,
        student_id: str,
        file_path: str,
        submission_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Create or replace a student's submission; resubmitting resets the grade"""
        homeworks = self.load_collection("homeworks")
        index = self._find_index(homeworks, homework_id)
        if index is None:
            raise ValueError(f"Homework {homework_id} not found")

        submission = {
            "file_path": file_path,
            "grade": PLACEHOLDER,
            "submission_date": to_iso(submission_date or datetime.now()),
        }
        homeworks[index].setdefault("submissions", {})[student_id] = submission
        self.save_collection("homeworks", homeworks)
        return submission

    def remove_submission(self, homework_id: str, student_id: str) -> bool:
        homeworks = self.load_collection("homeworks")
        index = self._find_index(homeworks, homework_id)
        if index is None:
            return False

        submissions = homeworks[index].get("submissions") or {}
        if student_id not in submissions:
            return False
        del submissions[student_id]
        self.save_collection("homeworks", homeworks)
        return True

    def set_submission_grade(self, homework_id: str, student_id: str, grade: str) -> bool:
        homeworks = self.load_collection("homeworks")
        index = self._find_index(homeworks, homework_id)
        if index is None:
            return False

        submission = (homeworks[index].get("submissions") or {}).get(student_id)
        if submission is None:
            return False
        submission["grade"] = grade
        self.save_collection("homeworks", homeworks)
        return True

    def get_submission(self, homework_id: str, student_id: str) -> Optional[Dict[str, Any]]:
        homework = self.get_homework(homework_id)
        if not homework:
            return None
        return (homework.get("submissions") or {}).get(student_id)

    def get_submission_grade(self, homework_id: str, student_id: str) -> str:
        submission = self.get_submission(homework_id, student_id)
        return submission.get("grade", PLACEHOLDER) if submission else PLACEHOLDER

    def get_submission_date(self, homework_id: str, student_id: str) -> Optional[str]:
        submission = self.get_submission(homework_id, student_id)
        return submission.get("submission_date") if submission else None

    def has_submitted(self, homework_id: str, student_id: str) -> bool:
        return self.get_submission_date(homework_id, student_id) is not None

    def get_all_submissions(self, homework_id: str) -> Dict[str, Dict[str, Any]]:
        homework = self.get_homework(homework_id)
        return (homework.get("submissions") or {}) if homework else {}

    # ==================== ABSENCE CERTIFICATE OPERATIONS ====================

    def create_certificate(
        self,
        user_id: str,
        start_date: Any,
        end_date: Any,
        file_path: Optional[str] = None,
        certificate_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        certificate = build_certificate_record(user_id, start_date, end_date, file_path, certificate_type)
        certificates = self.load_collection("certificates")
        certificates.append(certificate)
        self.save_collection("certificates", certificates)
        logger.info(f"✅ Created absence certificate {certificate['id']} for user {user_id}")
        return certificate

    def get_all_certificates(self) -> List[Dict[str, Any]]:
        return self.load_collection("certificates")

    def get_certificate(self, certificate_id: str) -> Optional[Dict[str, Any]]:
        return self._find("certificates", certificate_id)

    def get_certificates_by_user(self, user_id: str) -> List[Dict[str, Any]]:
        return [c for c in self.load_collection("certificates") if c.get("user_id") == user_id]

    def update_certificate(self, certificate_id: str, **updates) -> Dict[str, Any]:
        certificates = self.load_collection("certificates")
        index = self._find_index(certificates, certificate_id)
        if index is None:
            raise ValueError(f"Certificate {certificate_id} not found")

        updates.pop("id", None)
        certificate = {**certificates[index], **{k: to_iso(v) for k, v in updates.items()}}
        if to_date(certificate["end_date"]) < to_date(certificate["start_date"]):
            raise ValueError("End date cannot be before start date.")
        certificate["file_path"] = placeholder_if_blank(certificate.get("file_path"))
        certificate["certificate_type"] = placeholder_if_blank(certificate.get("certificate_type"))
        certificate["updated_at"] = now_utc_iso()

        certificates[index] = certificate
        self.save_collection("certificates", certificates)
        return certificate

    def upload_certificate_file(self, certificate_id: str, file_path: str, certificate_type: Optional[str] = None) -> Dict[str, Any]:
        """Attach the student's document reference to a certificate"""
        certificate = self.get_certificate(certificate_id)
        if not certificate:
            raise ValueError(f"Certificate {certificate_id} not found")
        if certificate.get("approved_status"):
            raise ValueError("This certificate is already approved!")
        if not file_path or not file_path.strip():
            raise ValueError("File path is required")

        return self.update_certificate(
            certificate_id,
            file_path=file_path,
            certificate_type=certificate_type if certificate_type else certificate.get("certificate_type"),
        )

    def approve_certificate(self, certificate_id: str) -> Dict[str, Any]:
        certificate = self.get_certificate(certificate_id)
        if not certificate:
            raise ValueError(f"Certificate {certificate_id} not found")
        if certificate.get("approved_status"):
            raise ValueError("This certificate is already approved!")
        if not certificate_has_file(certificate):
            raise ValueError("Cannot approve - no file uploaded yet!")

        return self.update_certificate(certificate_id, approved_status=True)

    def delete_certificate(self, certificate_id: str) -> bool:
        certificates = self.load_collection("certificates")
        remaining = [c for c in certificates if str(c.get("id")) != str(certificate_id)]
        if len(remaining) == len(certificates):
            return False
        self.save_collection("certificates", remaining)
        return True

    # ==================== LOGIN LOG OPERATIONS ====================

    def add_login_log(self, user_id: str, action: Any, device: Optional[str] = None) -> Dict[str, Any]:
        log = build_login_log(user_id, action, device)
        logs = self.load_collection("login_logs")
        logs.append(log)
        self.save_collection("login_logs", logs)
        return log

    def log_login(self, user_id: str, device: Optional[str] = None) -> Dict[str, Any]:
        return self.add_login_log(user_id, LoginAction.LOGIN, device)

    def log_logout(self, user_id: str, device: Optional[str] = None) -> Dict[str, Any]:
        return self.add_login_log(user_id, LoginAction.LOGOUT, device)

    def get_logs_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        return [log for log in self.load_collection("login_logs") if log.get("user_id") == user_id]

    def get_all_logs(self) -> List[Dict[str, Any]]:
        return self.load_collection("login_logs")

    # ==================== PREFERENCES ====================

    def get_theme(self) -> str:
        """Load the saved theme, writing the default on first use"""
        file_path = self.get_preference_file()
        if not os.path.exists(file_path):
            try:
                return self.save_theme(Theme.LIGHT)
            except OSError:
                return Theme.LIGHT.value
        return Theme.from_string(self.read_json(file_path)).value

    def save_theme(self, theme: Any) -> str:
        value = parse_theme(theme).value
        self.write_json(self.get_preference_file(), value)
        return value

    # ==================== BACKUP & MAINTENANCE ====================

    def backup_data(self, backup_dir: str = "backups") -> str:
        """Copy the whole data directory under a timestamped name"""
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        backup_path = os.path.join(backup_dir, f"data_{timestamp}")
        shutil.copytree(self.base_dir, backup_path)
        logger.info(f"💾 Backed up {self.base_dir} to {backup_path}")
        return backup_path

    def get_database_stats(self) -> Dict[str, Any]:
        """Get overall database statistics"""
        users = self.load_collection("users")
        homeworks = self.load_collection("homeworks")
        certificates = self.load_collection("certificates")

        return {
            "database": "file",
            "total_users": len(users),
            "students": sum(1 for u in users if u.get("role") == Role.STUDENT.value),
            "teachers": sum(1 for u in users if u.get("role") == Role.TEACHER.value),
            "admins": sum(1 for u in users if u.get("role") == Role.ADMIN.value),
            "total_homeworks": len(homeworks),
            "total_submissions": sum(len(h.get("submissions") or {}) for h in homeworks),
            "total_certificates": len(certificates),
            "pending_certificates": sum(1 for c in certificates if not c.get("approved_status")),
            "total_login_logs": len(self.load_collection("login_logs")),
            "timestamp": now_utc_iso(),
        }
