import base64
import binascii
import logging
import os
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

import jwt
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

logger = logging.getLogger(__name__)

# Historical static key; installations can override it with ENCRYPTION_KEY
DEFAULT_ENCRYPTION_KEY = "ThisIsASecretKey"
ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY", DEFAULT_ENCRYPTION_KEY)

SECRET_KEY = os.getenv("SECRET_KEY", "your-secret-key-change-this-in-production")
ALGORITHM = "HS256"

LOWERCASE_CHARACTERS = string.ascii_lowercase
UPPERCASE_CHARACTERS = string.ascii_uppercase
DIGITS = string.digits
SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{}|;:,.<>?"
ALL_PASSWORD_CHARACTERS = LOWERCASE_CHARACTERS + UPPERCASE_CHARACTERS + DIGITS + SPECIAL_CHARACTERS


class EncryptionError(Exception):
    pass


def _key_bytes(key: Optional[str]) -> bytes:
    key_bytes = (key or ENCRYPTION_KEY).encode("utf-8")
    if len(key_bytes) not in (16, 24, 32):
        raise EncryptionError("Encryption key must be 16, 24, or 32 bytes")
    return key_bytes


def _cipher(key: Optional[str]) -> Cipher:
    # ECB with PKCS7 keeps ciphertexts compatible with the existing users.json data
    return Cipher(algorithms.AES(_key_bytes(key)), modes.ECB())


def encrypt_password(password: str, key: Optional[str] = None) -> str:
    """Encrypt a password with AES and return it Base64 encoded"""
    try:
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        data = padder.update(password.encode("utf-8")) + padder.finalize()
        encryptor = _cipher(key).encryptor()
        encrypted = encryptor.update(data) + encryptor.finalize()
        return base64.b64encode(encrypted).decode("ascii")
    except EncryptionError:
        raise
    except Exception as e:
        raise EncryptionError("Error encrypting password") from e


def decrypt_password(encrypted_password: str, key: Optional[str] = None) -> str:
    """Decrypt a Base64 AES-encrypted password"""
    try:
        decryptor = _cipher(key).decryptor()
        decrypted = decryptor.update(base64.b64decode(encrypted_password, validate=True)) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        return (unpadder.update(decrypted) + unpadder.finalize()).decode("utf-8")
    except EncryptionError:
        raise
    except (binascii.Error, ValueError, TypeError) as e:
        raise EncryptionError("Error decrypting password") from e


def generate_password(length: int = 12) -> str:
    """Generate a random password with the specified length"""
    if length < 8:
        raise ValueError("Password length must be at least 8 characters.")
    return "".join(secrets.choice(ALL_PASSWORD_CHARACTERS) for _ in range(length))


def verify_password(user: Dict[str, Any], input_password: str) -> bool:
    """True iff the user's stored password decrypts to the input"""
    stored = user.get("password")
    if not stored:
        return False
    try:
        return decrypt_password(stored) == input_password
    except EncryptionError as e:
        logger.warning(f"⚠️ Could not decrypt password for user {user.get('id')}: {e}")
        return False


def authenticate(db, email: str, password: str, device: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Check credentials and record a LOGIN entry.

    Returns the user on success and None otherwise; an unknown email and a
    wrong password are not distinguished.
    """
    user = db.get_user_by_email(email)
    if user is None or not verify_password(user, password):
        logger.info(f"❌ Failed login for {email}")
        return None

    db.log_login(user["id"], device)
    logger.info(f"✅ LOGIN: {user['email']} ({user['role']})")
    return user


def logout(db, user_id: str, device: Optional[str] = None):
    db.log_logout(user_id, device)
    logger.info(f"👋 LOGOUT: user {user_id}")


def update_user_password(db, user_id: str, old_password: str, new_password: str) -> bool:
    """Replace a user's password after checking the old one"""
    user = db.get_user(user_id)
    if user is None:
        return False
    if not verify_password(user, old_password):
        return False

    db.update_user(user_id, password=encrypt_password(new_password))
    return True


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None, secret_key: Optional[str] = None) -> str:
    """Create JWT access token"""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)
    to_encode.update({"exp": expire, "iat": datetime.now(timezone.utc)})
    return jwt.encode(to_encode, secret_key or SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str, secret_key: Optional[str] = None) -> Dict[str, Any]:
    """Decode a JWT; raises jwt.ExpiredSignatureError / jwt.PyJWTError"""
    return jwt.decode(token, secret_key or SECRET_KEY, algorithms=[ALGORITHM])
