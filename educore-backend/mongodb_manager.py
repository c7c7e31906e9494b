import json
import logging
import os
import re
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from pymongo import MongoClient, ASCENDING
from pymongo.errors import DuplicateKeyError

from constants import PLACEHOLDER, LoginAction, Role, Theme
from db_manager import (
    build_certificate_record,
    build_homework_record,
    build_login_log,
    build_user_record,
    certificate_has_file,
    enum_value,
    normalize_user_updates,
    now_utc_iso,
    parse_theme,
    placeholder_if_blank,
    to_date,
    to_iso,
    validate_user_roles,
)

logger = logging.getLogger(__name__)


class MongoDBManager:
    """MongoDB storage with the same operations as the file-based DatabaseManager"""

    def __init__(self, mongo_uri: str, db_name: str = "educore_db"):
        """
        Initialize MongoDB connection

        Args:
            mongo_uri: MongoDB connection URI
            db_name: Name of the database to use
        """
        try:
            self.client = MongoClient(mongo_uri)
            self.db = self.client[db_name]

            # Collections
            self.users = self.db['users']
            self.homeworks = self.db['homeworks']
            self.certificates = self.db['certificates']
            self.login_logs = self.db['login_logs']
            self.preferences = self.db['preferences']

            self._create_indexes()

            logger.info("✅ MongoDB connection established successfully")
        except Exception as e:
            logger.error(f"❌ Failed to connect to MongoDB: {e}")
            raise

    def _create_indexes(self):
        """Create database indexes for efficient queries"""
        def _ensure_index(collection, keys, *, unique: bool = False):
            try:
                collection.create_index(keys, unique=unique)
            except Exception as create_err:
                # Existing duplicates must not stop the app from starting
                logger.warning(f"⚠️ Could not create index {keys} (unique={unique}): {create_err}")

        _ensure_index(self.users, [("id", ASCENDING)], unique=True)
        _ensure_index(self.users, [("email_lower", ASCENDING)], unique=True)
        _ensure_index(self.users, [("role", ASCENDING)])
        _ensure_index(self.homeworks, [("id", ASCENDING)], unique=True)
        _ensure_index(self.homeworks, [("class_id", ASCENDING)])
        _ensure_index(self.certificates, [("id", ASCENDING)], unique=True)
        _ensure_index(self.certificates, [("user_id", ASCENDING)])
        _ensure_index(self.login_logs, [("user_id", ASCENDING)])

    @staticmethod
    def _clean(document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Strip Mongo-only fields"""
        if document is None:
            return None
        document.pop("_id", None)
        document.pop("email_lower", None)
        return document

    def _find_all(self, collection, query: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return [self._clean(doc) for doc in collection.find(query or {}, {"_id": 0})]

    # ==================== USER OPERATIONS ====================

    def generate_next_user_id(self) -> str:
        max_id = 0
        for doc in self.users.find({}, {"_id": 0, "id": 1}):
            user_id = str(doc.get("id", ""))
            if user_id.isdigit():
                max_id = max(max_id, int(user_id))
        return str(max_id + 1)

    def user_exists(self, user_id: Optional[str] = None, email: Optional[str] = None) -> bool:
        conditions = []
        if user_id is not None:
            conditions.append({"id": str(user_id)})
        if email:
            conditions.append({"email_lower": email.strip().lower()})
        if not conditions:
            return False
        return self.users.count_documents({"$or": conditions}) > 0

    def create_user(self, user_data: Dict[str, Any], password: str) -> Dict[str, Any]:
        record = build_user_record(user_data)
        validate_user_roles(record)
        if not record["email"]:
            raise ValueError("Email is required")
        if self.user_exists(email=record["email"]):
            raise ValueError("User with this email already exists")

        user = {"id": self.generate_next_user_id(), **record, "password": password, "created_at": now_utc_iso()}
        try:
            self.users.insert_one({**user, "email_lower": user["email"].lower()})
        except DuplicateKeyError:
            raise ValueError("User with this email already exists")

        logger.info(f"✅ Created {user['role']} {user['id']} ({user['email']})")
        return user

    def get_all_users(self) -> List[Dict[str, Any]]:
        return self._find_all(self.users)

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self._clean(self.users.find_one({"id": str(user_id)}, {"_id": 0}))

    def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        if not email:
            return None
        return self._clean(self.users.find_one({"email_lower": email.strip().lower()}, {"_id": 0}))

    def get_users_by_role(self, role: str) -> List[Dict[str, Any]]:
        return self._find_all(self.users, {"role": enum_value(role)})

    @staticmethod
    def _class_pattern(class_id: str) -> Dict[str, Any]:
        """Exact, case-insensitive class match"""
        return {"$regex": f"^{re.escape(str(enum_value(class_id)).strip())}$", "$options": "i"}

    def get_students_by_class(self, class_id: str) -> List[Dict[str, Any]]:
        return self._find_all(self.users, {"role": Role.STUDENT.value, "class_id": self._class_pattern(class_id)})

    def get_teachers_by_class(self, class_id: str) -> List[Dict[str, Any]]:
        return self._find_all(self.users, {"role": Role.TEACHER.value, "taught_classes": self._class_pattern(class_id)})

    def update_user(self, user_id: str, **updates) -> Dict[str, Any]:
        user_data = self.get_user(user_id)
        if not user_data:
            raise ValueError(f"User {user_id} not found")

        merged = normalize_user_updates(user_data, updates)
        email_lower = (merged.get("email") or "").lower()
        if self.users.count_documents({"email_lower": email_lower, "id": {"$ne": str(user_id)}}) > 0:
            raise ValueError("User with this email already exists")

        self.users.replace_one({"id": str(user_id)}, {**merged, "email_lower": email_lower})
        return merged

    def delete_user(self, user_id: str) -> bool:
        result = self.users.delete_one({"id": str(user_id)})
        if result.deleted_count == 0:
            return False

        self.certificates.delete_many({"user_id": user_id})
        self.homeworks.update_many(
            {f"submissions.{user_id}": {"$exists": True}},
            {"$unset": {f"submissions.{user_id}": ""}}
        )
        logger.info(f"🗑️ Deleted user {user_id}")
        return True

    # ==================== HOMEWORK OPERATIONS ====================

    def create_homework(self, homework_data: Dict[str, Any]) -> Dict[str, Any]:
        homework = build_homework_record(homework_data)
        self.homeworks.insert_one(dict(homework))
        return homework

    def get_all_homework(self) -> List[Dict[str, Any]]:
        return self._find_all(self.homeworks)

    def get_homework(self, homework_id: str) -> Optional[Dict[str, Any]]:
        return self._clean(self.homeworks.find_one({"id": homework_id}, {"_id": 0}))

    def get_homework_by_class(self, class_id: str) -> List[Dict[str, Any]]:
        class_id = str(enum_value(class_id)).lower()
        return [h for h in self.get_all_homework() if str(h.get("class_id", "")).lower() == class_id]

    def get_homework_by_subject(self, subject: str) -> List[Dict[str, Any]]:
        subject = str(enum_value(subject)).lower()
        return [h for h in self.get_all_homework() if str(h.get("subject", "")).lower() == subject]

    def get_homework_for_teacher(self, subjects: List[str], classes: List[str]) -> List[Dict[str, Any]]:
        subjects = {str(s).lower() for s in subjects or []}
        classes = {str(c).lower() for c in classes or []}
        return [
            h for h in self.get_all_homework()
            if str(h.get("subject", "")).lower() in subjects
            and str(h.get("class_id", "")).lower() in classes
        ]

    def update_homework(self, homework_id: str, **updates) -> Dict[str, Any]:
        if not self.get_homework(homework_id):
            raise ValueError(f"Homework {homework_id} not found")

        updates.pop("id", None)
        updates.pop("submissions", None)
        updates = {k: to_iso(enum_value(v)) for k, v in updates.items()}
        updates["updated_at"] = now_utc_iso()

        self.homeworks.update_one({"id": homework_id}, {"$set": updates})
        return self.get_homework(homework_id)

    def delete_homework(self, homework_id: str) -> bool:
        return self.homeworks.delete_one({"id": homework_id}).deleted_count > 0

    def add_submission(
        self,
        homework_id: str,
        student_id: str,
        file_path: str,
        submission_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        submission = {
            "file_path": file_path,
            "grade": PLACEHOLDER,
            "submission_date": to_iso(submission_date or datetime.now()),
        }
        result = self.homeworks.update_one(
            {"id": homework_id},
            {"$set": {f"submissions.{student_id}": submission}}
        )
        if result.matched_count == 0:
            raise ValueError(f"Homework {homework_id} not found")
        return submission

    def remove_submission(self, homework_id: str, student_id: str) -> bool:
        result = self.homeworks.update_one(
            {"id": homework_id, f"submissions.{student_id}": {"$exists": True}},
            {"$unset": {f"submissions.{student_id}": ""}}
        )
        return result.modified_count > 0

    def set_submission_grade(self, homework_id: str, student_id: str, grade: str) -> bool:
        result = self.homeworks.update_one(
            {"id": homework_id, f"submissions.{student_id}": {"$exists": True}},
            {"$set": {f"submissions.{student_id}.grade": grade}}
        )
        return result.matched_count > 0

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
        self.certificates.insert_one(dict(certificate))
        return certificate

    def get_all_certificates(self) -> List[Dict[str, Any]]:
        return self._find_all(self.certificates)

    def get_certificate(self, certificate_id: str) -> Optional[Dict[str, Any]]:
        return self._clean(self.certificates.find_one({"id": certificate_id}, {"_id": 0}))

    def get_certificates_by_user(self, user_id: str) -> List[Dict[str, Any]]:
        return self._find_all(self.certificates, {"user_id": user_id})

    def update_certificate(self, certificate_id: str, **updates) -> Dict[str, Any]:
        existing = self.get_certificate(certificate_id)
        if not existing:
            raise ValueError(f"Certificate {certificate_id} not found")

        updates.pop("id", None)
        certificate = {**existing, **{k: to_iso(v) for k, v in updates.items()}}
        if to_date(certificate["end_date"]) < to_date(certificate["start_date"]):
            raise ValueError("End date cannot be before start date.")
        certificate["file_path"] = placeholder_if_blank(certificate.get("file_path"))
        certificate["certificate_type"] = placeholder_if_blank(certificate.get("certificate_type"))
        certificate["updated_at"] = now_utc_iso()

        self.certificates.replace_one({"id": certificate_id}, dict(certificate))
        return certificate

    def upload_certificate_file(self, certificate_id: str, file_path: str, certificate_type: Optional[str] = None) -> Dict[str, Any]:
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
        return self.certificates.delete_one({"id": certificate_id}).deleted_count > 0

    # ==================== LOGIN LOG OPERATIONS ====================

    def add_login_log(self, user_id: str, action: Any, device: Optional[str] = None) -> Dict[str, Any]:
        log = build_login_log(user_id, action, device)
        self.login_logs.insert_one(dict(log))
        return log

    def log_login(self, user_id: str, device: Optional[str] = None) -> Dict[str, Any]:
        return self.add_login_log(user_id, LoginAction.LOGIN, device)

    def log_logout(self, user_id: str, device: Optional[str] = None) -> Dict[str, Any]:
        return self.add_login_log(user_id, LoginAction.LOGOUT, device)

    def get_logs_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        return self._find_all(self.login_logs, {"user_id": user_id})

    def get_all_logs(self) -> List[Dict[str, Any]]:
        return self._find_all(self.login_logs)

    # ==================== PREFERENCES ====================

    def get_theme(self) -> str:
        document = self.preferences.find_one({"key": "theme"}, {"_id": 0})
        if not document:
            return self.save_theme(Theme.LIGHT)
        return Theme.from_string(document.get("value")).value

    def save_theme(self, theme: Any) -> str:
        value = parse_theme(theme).value
        self.preferences.update_one({"key": "theme"}, {"$set": {"value": value}}, upsert=True)
        return value

    # ==================== BACKUP & MAINTENANCE ====================

    def backup_data(self, backup_dir: str = "backups") -> str:
        """Dump every collection to JSON files under a timestamped directory"""
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        backup_path = os.path.join(backup_dir, f"mongodb_{timestamp}")
        os.makedirs(backup_path, exist_ok=True)

        collections = {
            "users.json": self.users,
            "homeworks.json": self.homeworks,
            "certificates.json": self.certificates,
            "login_logs.json": self.login_logs,
        }
        for file_name, collection in collections.items():
            with open(os.path.join(backup_path, file_name), 'w', encoding='utf-8') as f:
                json.dump(self._find_all(collection), f, indent=2, ensure_ascii=False)
        return backup_path

    def get_database_stats(self) -> Dict[str, Any]:
        """Get database statistics"""
        submissions = 0
        for doc in self.homeworks.find({}, {"_id": 0, "submissions": 1}):
            submissions += len(doc.get("submissions") or {})

        return {
            "database": "mongodb",
            "total_users": self.users.count_documents({}),
            "students": self.users.count_documents({"role": Role.STUDENT.value}),
            "teachers": self.users.count_documents({"role": Role.TEACHER.value}),
            "admins": self.users.count_documents({"role": Role.ADMIN.value}),
            "total_homeworks": self.homeworks.count_documents({}),
            "total_submissions": submissions,
            "total_certificates": self.certificates.count_documents({}),
            "pending_certificates": self.certificates.count_documents({"approved_status": False}),
            "total_login_logs": self.login_logs.count_documents({}),
            "timestamp": now_utc_iso(),
        }
