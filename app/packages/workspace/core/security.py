"""安全模块：校验外部认证服务签发的 JWT，并解析出已认证主体。

本服务不负责登录与令牌签发；``create_access_token`` 仅供脚本与测试生成令牌。
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from .config import get_settings
from .logger import logger


@dataclass(frozen=True)
class Principal:
    """已认证主体：``id`` 为不透明的用户标识，写入 created_by/updated_by。"""

    id: str
    email: Optional[str] = None


def create_access_token(subject: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """根据传入载荷生成带有过期时间的签名 JWT。"""
    settings = get_settings()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=60))
    to_encode = subject.copy()
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """解析 JWT；签名错误或过期时返回 ``None``。"""
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        logger.debug("Token decode failed: %s", exc)
        return None


def principal_from_payload(payload: Dict[str, Any]) -> Optional[Principal]:
    subject = payload.get("sub")
    if subject is None or str(subject).strip() == "":
        return None
    return Principal(id=str(subject), email=payload.get("email"))
