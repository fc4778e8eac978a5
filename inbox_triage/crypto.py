import base64
import hashlib
from typing import Optional
from cryptography.fernet import Fernet
from .settings import settings

def _fernet() -> Fernet:
    # Fernet wants a 32-byte urlsafe key; derive it from SECRET_KEY.
    digest = hashlib.sha256(settings.SECRET_KEY.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))

def encrypt_str(s: str) -> str:
    return _fernet().encrypt(s.encode("utf-8")).decode("utf-8")

def decrypt_str(s: str) -> str:
    return _fernet().decrypt(s.encode("utf-8")).decode("utf-8")

def encrypt_optional(s: Optional[str]) -> Optional[str]:
    return encrypt_str(s) if s else None
