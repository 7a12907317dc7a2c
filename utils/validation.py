"""
Validation utilities for user input (names, emails, PINs, passwords)
Every check runs before any gateway call and returns (is_valid, error_message)
"""
import re
from typing import Dict, Tuple

EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
MIN_PASSWORD_LENGTH = 6


def validate_email(email: str) -> Tuple[bool, str]:
    """
    Validate email address format.
    Returns (is_valid, error_message).
    """
    trimmed = (email or "").strip().lower()
    if not trimmed:
        return False, "Email is required"
    if not EMAIL_RE.match(trimmed):
        return False, "Invalid email format"
    return True, ""


def validate_required(fields: Dict[str, str]) -> Tuple[bool, str]:
    """All named fields must be non-blank; reports the first missing one."""
    for label, value in fields.items():
        if not str(value or "").strip():
            return False, f"{label} is required"
    return True, ""


def validate_pin(pin: str) -> Tuple[bool, str]:
    if not (pin or "").strip():
        return False, "PIN is required"
    return True, ""


def validate_password_pair(password: str, confirm: str) -> Tuple[bool, str]:
    """
    Sign-up password rules: minimum length and matching confirmation.
    """
    if not password:
        return False, "Password is required"
    if len(password) < MIN_PASSWORD_LENGTH:
        return False, f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
    if password != confirm:
        return False, "Passwords do not match"
    return True, ""


def validate_signup_data(name: str, email: str, password: str, confirm: str) -> Tuple[bool, str]:
    """
    Validate signup data (name, email and password pair).
    Returns (is_valid, error_message).
    """
    ok, err = validate_required({"Name": name})
    if not ok:
        return False, err

    ok, err = validate_email(email)
    if not ok:
        return False, err

    return validate_password_pair(password, confirm)
