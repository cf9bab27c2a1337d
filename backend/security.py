from datetime import datetime
from functools import wraps
from typing import Dict, Optional

import bcrypt
from bson import ObjectId
from bson.errors import InvalidId
from flask import jsonify
from flask_jwt_extended import create_access_token, get_jwt, verify_jwt_in_request


def hash_password(password: str, rounds: int = 10) -> bytes:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds))


def check_password(password: str, hashed) -> bool:
    if not hashed:
        return False
    if isinstance(hashed, str):
        hashed = hashed.encode("utf-8")
    return bcrypt.checkpw(password.encode("utf-8"), hashed)


def isoformat(value) -> Optional[str]:
    return value.isoformat() if isinstance(value, datetime) else None


def user_claims(user_document) -> Dict:
    """Public identity fields of a user, safe to embed in a token."""
    if not user_document:
        return {}

    avatar = user_document.get("avatar") or {}
    return {
        "_id": str(user_document.get("_id")),
        "username": user_document.get("username", "") or "",
        "firstName": user_document.get("first_name", "") or "",
        "lastName": user_document.get("last_name", "") or "",
        "email": user_document.get("email", "") or "",
        "userAvatar": {
            "public_id": avatar.get("public_id", ""),
            "url": avatar.get("url", ""),
        },
        "admin": bool(user_document.get("admin")),
        "createdAt": isoformat(user_document.get("created_at")),
        "updatedAt": isoformat(user_document.get("updated_at")),
    }


def issue_token(user_document) -> str:
    claims = user_claims(user_document)
    return create_access_token(identity=claims["_id"], additional_claims=claims)


def is_admin(claims: Optional[Dict]) -> bool:
    return bool(claims) and claims.get("admin") is True


def is_self_or_admin(claims: Optional[Dict], target_id) -> bool:
    if not claims:
        return False
    return claims.get("sub") == str(target_id) or is_admin(claims)


def is_token_revoked(users, jwt_payload: Dict) -> bool:
    """A token dies with its account, and with any change to the admin flag."""
    try:
        user_id = ObjectId(jwt_payload.get("sub"))
    except (InvalidId, TypeError):
        return True

    user_document = users.find_one({"_id": user_id}, {"admin": 1})
    if not user_document:
        return True
    return bool(user_document.get("admin")) != bool(jwt_payload.get("admin"))


def token_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        verify_jwt_in_request()
        return fn(*args, **kwargs)

    return wrapper


def self_or_admin_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        verify_jwt_in_request()
        if not is_self_or_admin(get_jwt(), kwargs.get("user_id")):
            return jsonify({"message": "You are not allowed to do that!"}), 403
        return fn(*args, **kwargs)

    return wrapper


def admin_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        verify_jwt_in_request()
        if not is_admin(get_jwt()):
            return jsonify({"message": "Only admins are allowed!"}), 403
        return fn(*args, **kwargs)

    return wrapper
