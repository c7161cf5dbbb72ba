"""
Утилиты для валидации входных данных
"""
import logging
import re
from typing import Tuple

logger = logging.getLogger(__name__)

# user-friendly адрес TON: 48 символов base64url
FRIENDLY_ADDRESS_RE = re.compile(r"^[A-Za-z0-9_-]{48}$")
# raw адрес: workchain:64 hex
RAW_ADDRESS_RE = re.compile(r"^-?\d+:[0-9a-fA-F]{64}$")

FINGERPRINT_RE = re.compile(r"^[A-Za-z0-9+/=_-]{8,128}$")

COUNTRY_RE = re.compile(r"^[A-Z]{2}$")


def validate_wallet_address(address: str) -> Tuple[bool, str]:
    """
    Валидация адреса TON кошелька

    Returns:
        (valid, error_message)
    """
    if not address or not address.strip():
        return False, "Wallet address is required"

    address = address.strip()
    if FRIENDLY_ADDRESS_RE.match(address) or RAW_ADDRESS_RE.match(address):
        return True, ""

    return False, "Invalid TON wallet address"


def validate_amount(amount_nano: int) -> Tuple[bool, str]:
    """
    Валидация суммы в nano
    """
    if isinstance(amount_nano, bool) or not isinstance(amount_nano, int):
        return False, "Amount must be an integer number of nano-units"

    if amount_nano <= 0:
        return False, "Amount must be positive"

    return True, ""


def sanitize_fingerprint(fingerprint: str) -> str:
    """
    Нормализовать хэш отпечатка устройства; мусор превращается в пустую строку
    """
    if not fingerprint:
        return ""
    fingerprint = fingerprint.strip()
    if not FINGERPRINT_RE.match(fingerprint):
        logger.debug(f"Dropping malformed fingerprint of length {len(fingerprint)}")
        return ""
    return fingerprint


def normalize_country(country: str) -> str:
    """ISO-код страны в верхнем регистре или пустая строка"""
    if not country:
        return ""
    country = country.strip().upper()
    return country if COUNTRY_RE.match(country) else ""


def mask_address(address: str, visible_chars: int = 6) -> str:
    """Маскировать адрес для логов"""
    if len(address) <= visible_chars * 2:
        return address
    return f"{address[:visible_chars]}...{address[-visible_chars:]}"
