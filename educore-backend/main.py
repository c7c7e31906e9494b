from fastapi import FastAPI, HTTPException, Depends, status, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, field_validator
from typing import Optional, List, Dict, Any, Callable
from contextlib import asynccontextmanager
import os
from datetime import date, datetime, timedelta
import jwt
import logging
from dotenv import load_dotenv
from user_agents import parse as parse_user_agent
import sib_api_v3_sdk
from sib_api_v3_sdk.rest import ApiException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import asyncio
import time
from zoneinfo import ZoneInfo

# Load environment variables from this file's directory so running uvicorn from repo root still works
ENV_PATH = os.path.join(os.path.dirname(__file__), ".env")
load_dotenv(dotenv_path=ENV_PATH)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

import auth_utils
import network_time
from constants import PLACEHOLDER, ClassLevel, Role, Subject, Theme
from db_manager import certificate_has_file, certificate_has_type, same_class, user_in_class
from example_data import ensure_admin

# Environment
APP_ENV = os.getenv("APP_ENV", "development").lower()  # development | production

# Check database type from environment
DB_TYPE = os.getenv("DB_TYPE", "file")  # "file" or "mongodb"

if DB_TYPE == "mongodb":
    from mongodb_manager import MongoDBManager
    MONGO_URI = os.getenv("MONGO_URI")
    MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "educore_db")

    if not MONGO_URI:
        raise ValueError("MONGO_URI environment variable not set")

    db = MongoDBManager(mongo_uri=MONGO_URI, db_name=MONGO_DB_NAME)
    logger.info("✅ Using MongoDB for storage")
else:
    from db_manager import DatabaseManager
    db = DatabaseManager(base_dir=os.getenv("DATA_DIR", "data"))
    logger.info("✅ Using file-based storage")

# Configuration
SECRET_KEY = auth_utils.SECRET_KEY
if APP_ENV != "development" and SECRET_KEY == "your-secret-key-change-this-in-production":
    raise ValueError("SECRET_KEY must be set in production")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 12)))
REQUEST_TIMEOUT = int(os.getenv("REQUEST_TIMEOUT", "30"))

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@school.edu")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")

# Brevo Configuration
BREVO_API_KEY = os.getenv("BREVO_API_KEY")
FROM_EMAIL = os.getenv("FROM_EMAIL")

configuration = sib_api_v3_sdk.Configuration()
configuration.api_key['api-key'] = BREVO_API_KEY


@asynccontextmanager
async def lifespan(app: FastAPI):
    created = ensure_admin(db, ADMIN_EMAIL, ADMIN_PASSWORD)
    if created and not ADMIN_PASSWORD:
        user, password = created
        logger.warning(f"🔑 Bootstrap admin {user['email']} created with password: {password}")
    yield


app = FastAPI(title="EduCore School Management API", lifespan=lifespan)

# CORS Configuration
# In production set CORS_ORIGINS to a comma-separated list, e.g.
#   CORS_ORIGINS=https://school.example.org,https://www.school.example.org
cors_origins_env = os.getenv("CORS_ORIGINS", "").strip()

cors_kwargs: Dict[str, Any] = {
    "allow_credentials": True,
    "allow_methods": ["*"],
    "allow_headers": ["*"],
}

if cors_origins_env:
    cors_kwargs["allow_origins"] = [o.strip() for o in cors_origins_env.split(",") if o.strip()]
else:
    cors_kwargs["allow_origins"] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

app.add_middleware(CORSMiddleware, **cors_kwargs)

# ==================== MIDDLEWARE ====================

class TimeoutMiddleware(BaseHTTPMiddleware):
    """Enforce a per-request timeout"""

    def __init__(self, app, timeout: int = 30):
        super().__init__(app)
        self.timeout = timeout

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        try:
            return await asyncio.wait_for(call_next(request), timeout=self.timeout)
        except asyncio.TimeoutError:
            duration = time.time() - start_time
            logger.error(f"⏱️ Request timeout: {request.method} {request.url.path} after {duration:.2f}s")
            return JSONResponse(
                status_code=504,
                content={
                    "detail": f"Request timeout - operation took longer than {self.timeout} seconds",
                    "error": "GATEWAY_TIMEOUT",
                    "path": str(request.url.path),
                    "method": request.method
                }
            )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log all requests with timing"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            logger.error(f"❌ {request.method} {request.url.path} - ERROR ({duration:.2f}s): {e}")
            raise

        duration = time.time() - start_time
        status_icon = "✅" if response.status_code < 400 else "❌"
        logger.info(f"{status_icon} {request.method} {request.url.path} - {response.status_code} ({duration:.2f}s)")
        if duration > 5:
            logger.warning(f"⚠️ Slow request: {request.method} {request.url.path} took {duration:.2f}s")

        response.headers["X-Process-Time"] = f"{duration:.4f}"
        return response


app.add_middleware(TimeoutMiddleware, timeout=REQUEST_TIMEOUT)
app.add_middleware(RequestLoggingMiddleware)

# Security
security = HTTPBearer()

# ==================== PYDANTIC MODELS ====================

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class ChangePasswordRequest(BaseModel):
    old_password: str
    new_password: str

    @field_validator('new_password')
    @classmethod
    def validate_new_password(cls, v):
        if len(v) < 8:
            raise ValueError('Password must be at least 8 characters long')
        return v

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]

class UserCreateRequest(BaseModel):
    name: str
    email: EmailStr
    role: Role
    birth_date: Optional[date] = None
    class_id: Optional[str] = None
    subjects: List[str] = []
    taught_classes: List[str] = []

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        if not v.strip():
            raise ValueError('Name must not be empty')
        return v.strip()

class UserUpdateRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[Role] = None
    birth_date: Optional[date] = None
    class_id: Optional[str] = None
    subjects: Optional[List[str]] = None
    taught_classes: Optional[List[str]] = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        if v is not None and not v.strip():
            raise ValueError('Name must not be empty')
        return v.strip() if v is not None else v

class HomeworkCreateRequest(BaseModel):
    description: str
    deadline: datetime
    subject: str
    class_id: str

class HomeworkUpdateRequest(BaseModel):
    description: Optional[str] = None
    deadline: Optional[datetime] = None
    subject: Optional[str] = None
    class_id: Optional[str] = None

class SubmissionRequest(BaseModel):
    file_path: str

    @field_validator('file_path')
    @classmethod
    def validate_file_path(cls, v):
        if not v.strip():
            raise ValueError('File path must not be empty')
        return v.strip()

class GradeRequest(BaseModel):
    grade: str

    @field_validator('grade')
    @classmethod
    def validate_grade(cls, v):
        if not v.strip():
            raise ValueError('Grade must not be empty')
        return v.strip()

class CertificateCreateRequest(BaseModel):
    user_id: str
    start_date: date
    end_date: date
    certificate_type: Optional[str] = None
    file_path: Optional[str] = None

class CertificateUploadRequest(BaseModel):
    file_path: str
    certificate_type: str

    @field_validator('file_path', 'certificate_type')
    @classmethod
    def validate_not_blank(cls, v):
        if not v.strip():
            raise ValueError('Value must not be empty')
        return v.strip()

class ThemeRequest(BaseModel):
    theme: Theme

# ==================== HELPER FUNCTIONS ====================

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    """Create JWT access token"""
    return auth_utils.create_access_token(data, expires_delta)


def describe_device(user_agent: Optional[str]) -> Optional[str]:
    """Short 'Browser on OS (Device)' label from a User-Agent header"""
    if not user_agent:
        return None
    ua = parse_user_agent(user_agent)
    label = f"{ua.browser.family} on {ua.os.family}"
    if ua.device.family and ua.device.family != "Other":
        label += f" ({ua.device.family})"
    return label


def calculate_age(birth_date: Optional[str]) -> Optional[int]:
    if not birth_date:
        return None
    try:
        born = date.fromisoformat(birth_date[:10])
    except ValueError:
        return None
    today = date.today()
    return today.year - born.year - ((today.month, today.day) < (born.month, born.day))


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    """User data safe to return: no password, age derived from birth date"""
    data = {k: v for k, v in user.items() if k != "password"}
    data["age"] = calculate_age(user.get("birth_date"))
    return data


def to_local_naive(value: datetime) -> datetime:
    """Deadlines are compared as wall-clock time in the school's time zone"""
    if value.tzinfo is not None:
        return value.astimezone(ZoneInfo(network_time.TIME_ZONE)).replace(tzinfo=None)
    return value


def is_overdue(homework: Dict[str, Any], now: datetime) -> bool:
    return to_local_naive(datetime.fromisoformat(homework["deadline"])) < now


def homework_status(homework: Dict[str, Any], student_id: str, now: datetime) -> str:
    if student_id in (homework.get("submissions") or {}):
        return "submitted"
    return "overdue" if is_overdue(homework, now) else "pending"


def value_error_to_http(e: ValueError) -> HTTPException:
    message = str(e)
    if "not found" in message.lower():
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=message)
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)


def send_credentials_email(to_email: str, name: str, password: str) -> bool:
    """Send a new user their login credentials using Brevo"""
    if not BREVO_API_KEY or not FROM_EMAIL:
        logger.warning(f"⚠️ Email not configured, credentials for {to_email} not sent")
        return False

    try:
        api_instance = sib_api_v3_sdk.TransactionalEmailsApi(
            sib_api_v3_sdk.ApiClient(configuration)
        )

        html = f"""
        <html>
        <body style="font-family: Arial, sans-serif; color: #2c3e50;">
            <h2>Welcome to EduCore, {name}!</h2>
            <p>An account has been created for you.</p>
            <p><strong>Email:</strong> {to_email}<br>
               <strong>Password:</strong> <code>{password}</code></p>
            <p>Please change your password after your first login.</p>
        </body>
        </html>
        """

        send_smtp_email = sib_api_v3_sdk.SendSmtpEmail(
            to=[{"email": to_email, "name": name}],
            sender={"email": FROM_EMAIL, "name": "EduCore"},
            subject="Your EduCore account",
            html_content=html
        )

        api_instance.send_transac_email(send_smtp_email)
        logger.info(f"✅ Credentials email sent to {to_email}")
        return True

    except ApiException as e:
        logger.error(f"❌ Brevo API error: {e}")
        return False
    except Exception as e:
        logger.error(f"❌ Error sending email: {e}")
        return False


def verify_token(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict[str, Any]:
    """Verify JWT token and return its payload; `sub` is the user id"""
    try:
        payload = auth_utils.decode_access_token(credentials.credentials)
        if payload.get("sub") is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid authentication credentials",
            )
        return payload
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
        )
    except jwt.PyJWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )


def issued_before_account(payload: Dict[str, Any], user: Dict[str, Any]) -> bool:
    """User ids are reused after deletion; a token older than the account belongs to a previous holder"""
    issued_at = payload.get("iat")
    created_at = user.get("created_at")
    if issued_at is None or not created_at:
        return False
    try:
        created = datetime.fromisoformat(created_at)
    except ValueError:
        return False
    return int(issued_at) < int(created.timestamp())


def get_current_user(payload: Dict[str, Any] = Depends(verify_token)) -> Dict[str, Any]:
    """Resolve the user behind the bearer token; email changes keep the token valid"""
    user = db.get_user(str(payload["sub"]))
    if not user or issued_before_account(payload, user):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User no longer exists",
        )
    return user


def require_roles(*roles: Role):
    allowed = {r.value for r in roles}

    def dependency(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if user.get("role") not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You do not have permission to perform this action"
            )
        return user

    return dependency


def get_homework_or_404(homework_id: str) -> Dict[str, Any]:
    homework = db.get_homework(homework_id)
    if not homework:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Homework not found")
    return homework


def check_teacher_owns(user: Dict[str, Any], subject: str, class_id: str):
    """Teachers may only manage homework for their own subjects and classes"""
    if user.get("role") != Role.TEACHER.value:
        return
    subjects = {s.lower() for s in user.get("subjects") or []}
    classes = {c.lower() for c in user.get("taught_classes") or []}
    if subject.lower() not in subjects or class_id.lower() not in classes:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only manage homework for your own subjects and classes"
        )


def check_student_class(user: Dict[str, Any], homework: Dict[str, Any]):
    if not same_class(user.get("class_id"), homework.get("class_id")):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="This homework is not assigned to your class")


def get_certificate_or_404(certificate_id: str) -> Dict[str, Any]:
    certificate = db.get_certificate(certificate_id)
    if not certificate:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Certificate not found")
    return certificate


def certificate_view(certificate: Dict[str, Any], users_by_id: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, Any]:
    data = dict(certificate)
    data["has_file"] = certificate_has_file(certificate)
    data["has_type"] = certificate_has_type(certificate)
    if users_by_id is not None:
        student = users_by_id.get(certificate.get("user_id"))
        data["student"] = {
            "name": student.get("name"),
            "email": student.get("email"),
            "class_id": student.get("class_id"),
        } if student else None
    return data

# ==================== API ENDPOINTS ====================

@app.get("/")
def read_root():
    return {
        "message": "EduCore School Management API",
        "version": "1.0.0",
        "status": "online",
        "database": DB_TYPE
    }


@app.get("/stats")
def get_stats(user: Dict[str, Any] = Depends(require_roles(Role.ADMIN))):
    """Get database statistics"""
    return db.get_database_stats()


@app.post("/admin/backup")
def backup_database(user: Dict[str, Any] = Depends(require_roles(Role.ADMIN))):
    try:
        backup_path = db.backup_data(os.getenv("BACKUP_DIR", "backups"))
        return {"success": True, "backup_path": backup_path}
    except Exception as e:
        logger.error(f"❌ Backup failed: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Backup failed")


@app.get("/time")
async def get_time():
    """Current school-local time from the network time sources"""
    now = await network_time.get_network_time_async()
    return {"time": now.isoformat(), "time_zone": network_time.TIME_ZONE}


@app.get("/reference")
def get_reference_data():
    """Subjects and class levels offered by the school"""
    return {
        "subjects": [s.value for s in Subject],
        "class_levels": [c.value for c in ClassLevel],
        "roles": [r.value for r in Role],
    }

# ==================== AUTH ENDPOINTS ====================

@app.post("/auth/login", response_model=TokenResponse)
async def login(request: LoginRequest, http_request: Request):
    """Login with email and password; records a LOGIN entry in the audit log"""
    device = describe_device(http_request.headers.get("user-agent"))
    user = auth_utils.authenticate(db, request.email, request.password, device)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password"
        )

    access_token = create_access_token(
        data={"sub": user["id"]},
        expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )

    return TokenResponse(access_token=access_token, user=public_user(user))


@app.post("/auth/logout")
async def logout(http_request: Request, user: Dict[str, Any] = Depends(get_current_user)):
    """Logout user; records a LOGOUT entry in the audit log"""
    auth_utils.logout(db, user["id"], describe_device(http_request.headers.get("user-agent")))
    return {"success": True, "message": "Logged out successfully"}


@app.get("/auth/me")
async def get_me(user: Dict[str, Any] = Depends(get_current_user)):
    return public_user(user)


@app.post("/auth/change-password")
async def change_password(request: ChangePasswordRequest, user: Dict[str, Any] = Depends(get_current_user)):
    """Change password after verifying the current one"""
    if not auth_utils.update_user_password(db, user["id"], request.old_password, request.new_password):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Current password is incorrect")
    return {"success": True, "message": "Password changed successfully"}

# ==================== USER ENDPOINTS ====================

@app.get("/users")
async def list_users(
    role: Optional[Role] = None,
    class_id: Optional[str] = None,
    user: Dict[str, Any] = Depends(require_roles(Role.ADMIN, Role.TEACHER)),
):
    """List users; teachers can only list students"""
    if user["role"] == Role.TEACHER.value:
        if role not in (None, Role.STUDENT):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Teachers can only list students")
        role = Role.STUDENT

    if class_id and role == Role.STUDENT:
        users = db.get_students_by_class(class_id)
    elif class_id and role == Role.TEACHER:
        users = db.get_teachers_by_class(class_id)
    elif role:
        users = db.get_users_by_role(role.value)
    else:
        users = db.get_all_users()

    if class_id:
        users = [u for u in users if user_in_class(u, class_id)]

    return {"users": [public_user(u) for u in users], "count": len(users)}


@app.post("/users", status_code=status.HTTP_201_CREATED)
async def create_user(request: UserCreateRequest, user: Dict[str, Any] = Depends(require_roles(Role.ADMIN))):
    """Create a user with a generated password, emailed to them when email is configured"""
    try:
        password = auth_utils.generate_password(12)
        new_user = db.create_user(request.model_dump(), auth_utils.encrypt_password(password))

        email_sent = send_credentials_email(new_user["email"], new_user["name"], password)
        response = {
            "success": True,
            "user": public_user(new_user),
            "message": "Credentials sent to the user's email" if email_sent else "Email not sent, share the password manually",
        }
        if not email_sent:
            response["password"] = password
        return response
    except ValueError as e:
        raise value_error_to_http(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Create user error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create user"
        )


@app.get("/users/{user_id}")
async def get_user(user_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    target = db.get_user(user_id)
    if not target:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    if user["role"] == Role.STUDENT.value and target["id"] != user["id"]:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You can only view your own profile")
    if user["role"] == Role.TEACHER.value and target["id"] != user["id"] and target.get("role") != Role.STUDENT.value:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Teachers can only view students")

    return public_user(target)


@app.put("/users/{user_id}")
async def update_user(user_id: str, request: UserUpdateRequest, user: Dict[str, Any] = Depends(require_roles(Role.ADMIN))):
    """Update profile fields; null values are ignored. Tokens carry the user id, so an email change keeps sessions."""
    try:
        updated = db.update_user(user_id, **request.model_dump(exclude_unset=True, exclude_none=True))
        return {"success": True, "user": public_user(updated)}
    except ValueError as e:
        raise value_error_to_http(e)
    except Exception as e:
        logger.error(f"Update user error: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to update user")


@app.delete("/users/{user_id}")
async def delete_user(user_id: str, user: Dict[str, Any] = Depends(require_roles(Role.ADMIN))):
    if user_id == user["id"]:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You cannot delete your own account")

    if not db.delete_user(user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return {"success": True, "message": "User deleted successfully"}

# ==================== HOMEWORK ENDPOINTS ====================

@app.get("/homeworks")
async def list_homeworks(
    class_id: Optional[str] = None,
    subject: Optional[str] = None,
    user: Dict[str, Any] = Depends(get_current_user),
):
    """
    List homework visible to the caller.
    - Students: their class, with their own submission and a status
    - Teachers: their subjects in their classes
    - Admins: everything
    """
    role = user["role"]
    if role == Role.STUDENT.value:
        homeworks = db.get_homework_by_class(user.get("class_id") or "")
    elif role == Role.TEACHER.value:
        homeworks = db.get_homework_for_teacher(user.get("subjects") or [], user.get("taught_classes") or [])
    else:
        homeworks = db.get_all_homework()

    if class_id:
        homeworks = [h for h in homeworks if str(h.get("class_id", "")).lower() == class_id.lower()]
    if subject:
        homeworks = [h for h in homeworks if str(h.get("subject", "")).lower() == subject.lower()]

    homeworks = sorted(homeworks, key=lambda h: h.get("deadline") or "")

    if role == Role.STUDENT.value:
        now = await network_time.get_network_time_async()
        result = []
        for homework in homeworks:
            item = {k: v for k, v in homework.items() if k != "submissions"}
            item["submission"] = (homework.get("submissions") or {}).get(user["id"])
            item["status"] = homework_status(homework, user["id"], now)
            result.append(item)
        return {"homeworks": result, "count": len(result)}

    return {"homeworks": homeworks, "count": len(homeworks)}


@app.post("/homeworks", status_code=status.HTTP_201_CREATED)
async def create_homework(
    request: HomeworkCreateRequest,
    user: Dict[str, Any] = Depends(require_roles(Role.TEACHER, Role.ADMIN)),
):
    check_teacher_owns(user, request.subject, request.class_id)

    deadline = to_local_naive(request.deadline)
    if deadline < network_time.system_time():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Deadline must be in the future.")

    try:
        homework = db.create_homework({
            "description": request.description,
            "deadline": deadline,
            "subject": request.subject,
            "class_id": request.class_id,
            "created_by": user["id"],
        })
        return {"success": True, "homework": homework}
    except ValueError as e:
        raise value_error_to_http(e)
    except Exception as e:
        logger.error(f"Create homework error: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create homework")


@app.get("/homeworks/{homework_id}")
async def get_homework(homework_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    homework = get_homework_or_404(homework_id)

    if user["role"] == Role.STUDENT.value:
        check_student_class(user, homework)
        now = await network_time.get_network_time_async()
        item = {k: v for k, v in homework.items() if k != "submissions"}
        item["submission"] = (homework.get("submissions") or {}).get(user["id"])
        item["status"] = homework_status(homework, user["id"], now)
        return item

    check_teacher_owns(user, homework.get("subject", ""), homework.get("class_id", ""))
    return homework


@app.put("/homeworks/{homework_id}")
async def update_homework(
    homework_id: str,
    request: HomeworkUpdateRequest,
    user: Dict[str, Any] = Depends(require_roles(Role.TEACHER, Role.ADMIN)),
):
    """Edit homework details; existing submissions are kept"""
    homework = get_homework_or_404(homework_id)
    check_teacher_owns(user, homework.get("subject", ""), homework.get("class_id", ""))

    updates = request.model_dump(exclude_unset=True, exclude_none=True)
    check_teacher_owns(
        user,
        updates.get("subject", homework.get("subject", "")),
        updates.get("class_id", homework.get("class_id", "")),
    )
    if "deadline" in updates:
        updates["deadline"] = to_local_naive(updates["deadline"])

    try:
        updated = db.update_homework(homework_id, **updates)
        return {"success": True, "homework": updated}
    except ValueError as e:
        raise value_error_to_http(e)


@app.delete("/homeworks/{homework_id}")
async def delete_homework(homework_id: str, user: Dict[str, Any] = Depends(require_roles(Role.TEACHER, Role.ADMIN))):
    homework = get_homework_or_404(homework_id)
    check_teacher_owns(user, homework.get("subject", ""), homework.get("class_id", ""))

    db.delete_homework(homework_id)
    return {"success": True, "message": "Homework deleted successfully"}


@app.post("/homeworks/{homework_id}/submission")
async def submit_homework(
    homework_id: str,
    request: SubmissionRequest,
    user: Dict[str, Any] = Depends(require_roles(Role.STUDENT)),
):
    """
    Submit (or resubmit) homework.
    - Not allowed once the deadline has passed, judged by network time
    - Resubmitting replaces the file and resets the grade
    """
    homework = get_homework_or_404(homework_id)
    check_student_class(user, homework)

    now = await network_time.get_network_time_async()
    existing = (homework.get("submissions") or {}).get(user["id"])

    if is_overdue(homework, now):
        if existing:
            detail = "You already submitted this homework and the deadline has passed. You cannot resubmit after the deadline."
        else:
            detail = "The deadline has passed. You can no longer submit this homework."
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

    try:
        submission = db.add_submission(homework_id, user["id"], request.file_path, now)
    except ValueError as e:
        raise value_error_to_http(e)

    return {
        "success": True,
        "message": "Submission updated!" if existing else "Submission received!",
        "submission": submission
    }


@app.delete("/homeworks/{homework_id}/submission")
async def withdraw_submission(homework_id: str, user: Dict[str, Any] = Depends(require_roles(Role.STUDENT))):
    homework = get_homework_or_404(homework_id)
    check_student_class(user, homework)

    now = await network_time.get_network_time_async()
    if is_overdue(homework, now):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="The deadline has passed.")

    if not db.remove_submission(homework_id, user["id"]):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No submission to withdraw")
    return {"success": True, "message": "Submission withdrawn"}


@app.get("/homeworks/{homework_id}/submissions")
async def list_submissions(homework_id: str, user: Dict[str, Any] = Depends(require_roles(Role.TEACHER, Role.ADMIN))):
    """Every student of the homework's class with their submission, if any"""
    homework = get_homework_or_404(homework_id)
    check_teacher_owns(user, homework.get("subject", ""), homework.get("class_id", ""))

    submissions = homework.get("submissions") or {}
    students = db.get_students_by_class(homework.get("class_id", ""))
    rows = [
        {
            "student": public_user(student),
            "submission": submissions.get(student["id"]),
            "grade": (submissions.get(student["id"]) or {}).get("grade", PLACEHOLDER),
        }
        for student in students
    ]
    return {"homework_id": homework_id, "students": rows, "submitted_count": len(submissions)}


@app.put("/homeworks/{homework_id}/submissions/{student_id}/grade")
async def grade_submission(
    homework_id: str,
    student_id: str,
    request: GradeRequest,
    user: Dict[str, Any] = Depends(require_roles(Role.TEACHER, Role.ADMIN)),
):
    homework = get_homework_or_404(homework_id)
    check_teacher_owns(user, homework.get("subject", ""), homework.get("class_id", ""))

    if not db.set_submission_grade(homework_id, student_id, request.grade):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Submission not found")
    return {"success": True, "grade": request.grade}

# ==================== ABSENCE CERTIFICATE ENDPOINTS ====================

@app.get("/certificates")
async def list_certificates(
    user_id: Optional[str] = None,
    approved: Optional[bool] = None,
    user: Dict[str, Any] = Depends(get_current_user),
):
    """Students see their own certificates; teachers and admins see all, with student details"""
    if user["role"] == Role.STUDENT.value:
        certificates = db.get_certificates_by_user(user["id"])
        users_by_id = None
    else:
        certificates = db.get_certificates_by_user(user_id) if user_id else db.get_all_certificates()
        users_by_id = {u["id"]: u for u in db.get_all_users()}

    if approved is not None:
        certificates = [c for c in certificates if bool(c.get("approved_status")) == approved]

    certificates = sorted(certificates, key=lambda c: c.get("start_date") or "", reverse=True)
    return {
        "certificates": [certificate_view(c, users_by_id) for c in certificates],
        "count": len(certificates)
    }


@app.post("/certificates", status_code=status.HTTP_201_CREATED)
async def create_certificate(
    request: CertificateCreateRequest,
    user: Dict[str, Any] = Depends(require_roles(Role.TEACHER, Role.ADMIN)),
):
    """Register an absence for a student; the student uploads the document later"""
    student = db.get_user(request.user_id)
    if not student:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Student not found")
    if student.get("role") != Role.STUDENT.value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Absence certificates are only for students")

    try:
        certificate = db.create_certificate(
            request.user_id,
            request.start_date,
            request.end_date,
            request.file_path,
            request.certificate_type,
        )
        return {"success": True, "certificate": certificate_view(certificate)}
    except ValueError as e:
        raise value_error_to_http(e)


@app.put("/certificates/{certificate_id}/upload")
async def upload_certificate(
    certificate_id: str,
    request: CertificateUploadRequest,
    user: Dict[str, Any] = Depends(require_roles(Role.STUDENT)),
):
    certificate = get_certificate_or_404(certificate_id)
    if certificate.get("user_id") != user["id"]:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="This certificate belongs to another student")

    try:
        updated = db.upload_certificate_file(certificate_id, request.file_path, request.certificate_type)
        return {"success": True, "certificate": certificate_view(updated)}
    except ValueError as e:
        raise value_error_to_http(e)


@app.post("/certificates/{certificate_id}/approve")
async def approve_certificate(certificate_id: str, user: Dict[str, Any] = Depends(require_roles(Role.TEACHER, Role.ADMIN))):
    get_certificate_or_404(certificate_id)
    try:
        approved = db.approve_certificate(certificate_id)
        logger.info(f"✅ Certificate {certificate_id} approved by {user['email']}")
        return {"success": True, "certificate": certificate_view(approved)}
    except ValueError as e:
        raise value_error_to_http(e)


@app.delete("/certificates/{certificate_id}")
async def delete_certificate(certificate_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    """Teachers and admins can delete any certificate; students only their own unapproved ones"""
    certificate = get_certificate_or_404(certificate_id)

    if user["role"] == Role.STUDENT.value:
        if certificate.get("user_id") != user["id"]:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="This certificate belongs to another student")
        if certificate.get("approved_status"):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Approved certificates cannot be deleted")

    db.delete_certificate(certificate_id)
    return {"success": True, "message": "Certificate deleted successfully"}

# ==================== LOGIN LOG ENDPOINTS ====================

@app.get("/logs")
async def list_logs(user_id: Optional[str] = None, user: Dict[str, Any] = Depends(require_roles(Role.ADMIN))):
    """Login audit trail, newest first"""
    logs = db.get_logs_for_user(user_id) if user_id else db.get_all_logs()
    users_by_id = {u["id"]: u for u in db.get_all_users()}

    result = []
    for log in sorted(logs, key=lambda entry: entry.get("timestamp") or "", reverse=True):
        item = dict(log)
        owner = users_by_id.get(log.get("user_id"))
        item["user_name"] = owner.get("name") if owner else None
        item["user_email"] = owner.get("email") if owner else None
        result.append(item)
    return {"logs": result, "count": len(result)}


@app.get("/logs/me")
async def list_my_logs(user: Dict[str, Any] = Depends(get_current_user)):
    logs = sorted(db.get_logs_for_user(user["id"]), key=lambda entry: entry.get("timestamp") or "", reverse=True)
    return {"logs": logs, "count": len(logs)}

# ==================== PREFERENCE ENDPOINTS ====================

@app.get("/preferences/theme")
async def get_theme():
    return {"theme": db.get_theme()}


@app.put("/preferences/theme")
async def set_theme(request: ThemeRequest, user: Dict[str, Any] = Depends(get_current_user)):
    return {"theme": db.save_theme(request.theme)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
