from enum import Enum


class Role(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"


class Subject(str, Enum):
    MATH = "Mathematics"
    PHYSICS = "Physics"
    CHEMISTRY = "Chemistry"
    LITERATURE = "Literature"
    HISTORY = "History"
    ART = "Art"


class ClassLevel(str, Enum):
    NINE_A = "9.A"
    NINE_B = "9.B"
    TEN_A = "10.A"
    TEN_B = "10.B"
    ELEVEN_A = "11.A"
    ELEVEN_B = "11.B"
    TWELVE_A = "12.A"
    TWELVE_B = "12.B"


class Theme(str, Enum):
    LIGHT = "Light"
    DARK = "Dark"

    @classmethod
    def from_string(cls, text) -> "Theme":
        """Match a display name case-insensitively, defaulting to LIGHT"""
        if isinstance(text, str):
            for theme in cls:
                if theme.value.lower() == text.strip().lower():
                    return theme
        return cls.LIGHT


class LoginAction(str, Enum):
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"


ROLES = [r.value for r in Role]

# Placeholder for certificate fields and ungraded submissions
PLACEHOLDER = "-"

# Collection name -> file name (file backend)
COLLECTION_FILES = {
    "users": "users.json",
    "homeworks": "homeworks.json",
    "certificates": "certificates.json",
    "login_logs": "login_logs.json",
}
PREFERENCE_FILE = "preference.json"
