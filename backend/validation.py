import math
import re
from typing import Dict, Optional, Tuple

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
password_regex = re.compile(r"^[a-zA-Z0-9]{8,30}$")
NAME_MIN_LENGTH = 2
BSON_INT64_LIMIT = 2**63

ValidationResult = Tuple[Optional[Dict], Optional[str]]


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def is_valid_email(value: Optional[str]) -> bool:
    normalized = normalize_email(value)
    return bool(normalized and email_regex.match(normalized))


def is_valid_password(value) -> bool:
    return isinstance(value, str) and bool(password_regex.match(value))


def is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def parse_number(value) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if -BSON_INT64_LIMIT <= value < BSON_INT64_LIMIT else None
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return None
        if not math.isfinite(number):
            return None
        return parse_number(int(number) if number.is_integer() else number)
    return None


def parse_positive_int(value) -> Optional[int]:
    number = parse_number(value)
    if number is None or number != int(number) or number <= 0:
        return None
    return int(number)


def parse_admin_flag(value) -> Optional[bool]:
    """Only real booleans are accepted; "true", 1 and friends are not."""
    if value is True or value is False:
        return value
    return None


def _clean_username(value) -> Tuple[Optional[str], Optional[str]]:
    username = str(value or "").strip()
    if not username:
        return None, '"username" is required'
    if not username.isalnum() or not username.isascii():
        return None, '"username" must only contain alpha-numeric characters'
    return username, None


def _clean_name(field: str, value) -> Tuple[Optional[str], Optional[str]]:
    name = str(value or "").strip().lower()
    if not name:
        return None, f'"{field}" is required'
    if len(name) < NAME_MIN_LENGTH:
        return None, f'"{field}" length must be at least {NAME_MIN_LENGTH} characters long'
    return name, None


def _clean_email(value) -> Tuple[Optional[str], Optional[str]]:
    email = normalize_email(value)
    if not email:
        return None, '"email" is required'
    if not is_valid_email(email):
        return None, '"email" must be a valid email'
    return email, None


def _clean_password(value) -> Tuple[Optional[str], Optional[str]]:
    if is_blank(value):
        return None, '"password" is required'
    if not is_valid_password(value):
        return (
            None,
            '"password" must be 8 to 30 characters long and only contain letters and numbers',
        )
    return value, None


def validate_create_user(payload: Dict) -> ValidationResult:
    cleaned: Dict[str, str] = {}

    username, error = _clean_username(payload.get("username"))
    if error:
        return None, error
    cleaned["username"] = username

    for field, key in (("firstName", "first_name"), ("lastName", "last_name")):
        name, error = _clean_name(field, payload.get(field))
        if error:
            return None, error
        cleaned[key] = name

    email, error = _clean_email(payload.get("email"))
    if error:
        return None, error
    cleaned["email"] = email

    password, error = _clean_password(payload.get("password"))
    if error:
        return None, error
    cleaned["password"] = password

    return cleaned, None


def validate_update_user(payload: Dict) -> ValidationResult:
    cleaned: Dict[str, str] = {}

    if not is_blank(payload.get("username")):
        username, error = _clean_username(payload.get("username"))
        if error:
            return None, error
        cleaned["username"] = username

    for field, key in (("firstName", "first_name"), ("lastName", "last_name")):
        if is_blank(payload.get(field)):
            continue
        name, error = _clean_name(field, payload.get(field))
        if error:
            return None, error
        cleaned[key] = name

    if not is_blank(payload.get("email")):
        email, error = _clean_email(payload.get("email"))
        if error:
            return None, error
        cleaned["email"] = email

    return cleaned, None


def validate_password_change(payload: Dict) -> ValidationResult:
    password, error = _clean_password(payload.get("password"))
    if error:
        return None, error
    return {"password": password}, None


def validate_login(payload: Dict) -> ValidationResult:
    email, error = _clean_email(payload.get("email"))
    if error:
        return None, error
    password, error = _clean_password(payload.get("password"))
    if error:
        return None, error
    return {"email": email, "password": password}, None


def _clean_image_reference(value) -> Tuple[Optional[Dict], Optional[str]]:
    if value is None:
        return {}, None
    if not isinstance(value, dict):
        return None, '"productImage" must be an object'
    reference: Dict[str, str] = {}
    for key in ("public_id", "url"):
        if key not in value:
            continue
        if not isinstance(value[key], str):
            return None, f'"productImage.{key}" must be a string'
        reference[key] = value[key]
    return reference, None


def _clean_cart_key(payload: Dict) -> Tuple[Optional[Dict], Optional[str]]:
    line_id = payload.get("id")
    if isinstance(line_id, str) and line_id.strip():
        return {"id": line_id.strip()}, None

    reference, error = _clean_image_reference(payload.get("productImage"))
    if error:
        return None, error
    if reference.get("url"):
        return {"url": reference["url"]}, None

    return None, 'Either "id" or "productImage.url" is required'


def validate_cart_item(payload: Dict) -> ValidationResult:
    cleaned: Dict = {}
    for field in ("name", "category"):
        value = payload.get(field)
        if not isinstance(value, str) or not value.strip():
            return None, f'"{field}" is required'
        cleaned[field] = value.strip()

    price = parse_number(payload.get("price"))
    if price is None:
        return None, '"price" must be a number'
    cleaned["price"] = price

    reference, error = _clean_image_reference(payload.get("productImage"))
    if error:
        return None, error
    cleaned["product_image"] = reference

    if payload.get("count") is None:
        cleaned["count"] = 1
    else:
        count = parse_positive_int(payload.get("count"))
        if count is None:
            return None, '"count" must be a positive integer'
        cleaned["count"] = count

    return cleaned, None


def validate_cart_update(payload: Dict) -> ValidationResult:
    key, error = _clean_cart_key(payload)
    if error:
        return None, error

    count = parse_positive_int(payload.get("count"))
    if count is None:
        return None, '"count" must be a positive integer'

    return {"key": key, "count": count}, None


def validate_cart_key(payload: Dict) -> ValidationResult:
    key, error = _clean_cart_key(payload)
    if error:
        return None, error
    return {"key": key}, None


def validate_create_product(payload: Dict) -> ValidationResult:
    cleaned: Dict = {}
    for field in ("name", "category"):
        value = str(payload.get(field) or "").strip()
        if not value:
            return None, f'"{field}" is required'
        cleaned[field] = value

    price = parse_number(payload.get("price"))
    if price is None:
        return None, '"price" must be a number'
    cleaned["price"] = price

    if is_blank(payload.get("count")):
        cleaned["count"] = 1
    else:
        count = parse_number(payload.get("count"))
        if count is None:
            return None, '"count" must be a number'
        cleaned["count"] = count

    return cleaned, None


def validate_update_product(payload: Dict) -> ValidationResult:
    cleaned: Dict = {}
    for field in ("name", "category"):
        if field not in payload:
            continue
        value = str(payload.get(field) or "").strip()
        if not value:
            return None, f'"{field}" is not allowed to be empty'
        cleaned[field] = value

    for field in ("price", "count"):
        if field not in payload or is_blank(payload.get(field)):
            continue
        number = parse_number(payload.get(field))
        if number is None:
            return None, f'"{field}" must be a number'
        cleaned[field] = number

    return cleaned, None
