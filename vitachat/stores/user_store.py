"""
用户记录持久化（users 表），通过 SQLModel 访问。
find_by_email 返回含 password 哈希的 dict，仅供认证使用；其余接口返回公开字段。
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from vitachat.auth.password import hash_password
from vitachat.db.engine import get_engine
from vitachat.db.models import User, _now_iso


class UserStore:

    def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        normalized = (email or "").strip().lower()
        if not normalized:
            return None
        with Session(get_engine()) as session:
            row = session.exec(select(User).where(User.email == normalized)).first()
        if not row:
            return None
        return {**row.public_dict(), "password": row.password}

    def find_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        with Session(get_engine()) as session:
            row = session.get(User, user_id)
        return row.public_dict() if row else None

    def create_user(self, email: str, password: str) -> Dict[str, Any]:
        """创建用户；邮箱已存在时抛 ValueError。"""
        normalized = (email or "").strip().lower()
        if not normalized or "@" not in normalized:
            raise ValueError("a valid email is required")
        row = User(email=normalized, password=hash_password(password))
        try:
            with Session(get_engine()) as session:
                session.add(row)
                session.commit()
                session.refresh(row)
                return row.public_dict()
        except IntegrityError:
            raise ValueError(f"user already exists: {normalized}")

    def update_password(self, user_id: str, password: str) -> bool:
        with Session(get_engine()) as session:
            row = session.get(User, user_id)
            if not row:
                return False
            row.password = hash_password(password)
            row.updated_at = _now_iso()
            session.add(row)
            session.commit()
        return True

    def list_users(self, limit: int = 100) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), 1000))
        with Session(get_engine()) as session:
            rows = session.exec(select(User).order_by(User.created_at).limit(limit)).all()
        return [r.public_dict() for r in rows]


user_store = UserStore()
