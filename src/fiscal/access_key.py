"""
NF-e access key ("chave de acesso").

Layout of the base, followed by one mod-11 check digit:

    UF(2) + YY(2) + MM(2) + CNPJ root(8) + model(2) + series(3) + number(9)
"""
import re
from datetime import datetime
from typing import Optional

from src.config import Config

CHECK_DIGIT_WEIGHTS = (2, 9, 8, 7, 6, 5, 4, 3, 2, 1)

BASE_KEY_LENGTH = 2 + 2 + 2 + 8 + 2 + 3 + 9
ACCESS_KEY_LENGTH = BASE_KEY_LENGTH + 1


def calculate_check_digit(base_key: str) -> int:
    if not base_key.isdigit():
        raise ValueError(f"Access key base must be numeric, got {base_key!r}")

    total = sum(
        int(digit) * CHECK_DIGIT_WEIGHTS[position % len(CHECK_DIGIT_WEIGHTS)]
        for position, digit in enumerate(base_key)
    )
    digit = 11 - (total % 11)
    return 0 if digit in (10, 11) else digit


def build_base_key(
    issuer_tax_id: str,
    series: str,
    number: int,
    issue_date: datetime,
    region_code: Optional[str] = None,
    model: Optional[str] = None,
) -> str:
    region_code = region_code or Config.FISCAL_REGION_CODE
    model = model or Config.FISCAL_DOCUMENT_MODEL

    cnpj_digits = re.sub(r"\D", "", issuer_tax_id or "")
    series_digits = re.sub(r"\D", "", str(series)) or "0"

    base_key = (
        f"{region_code:0>2}"
        f"{issue_date.year % 100:02d}"
        f"{issue_date.month:02d}"
        f"{cnpj_digits[:8]:0>8}"
        f"{model:0>2}"
        f"{series_digits:0>3}"
        f"{number:09d}"
    )
    if len(base_key) != BASE_KEY_LENGTH:
        raise ValueError(
            f"Access key base has {len(base_key)} digits, expected {BASE_KEY_LENGTH}"
        )
    return base_key


def generate_access_key(
    issuer_tax_id: str,
    series: str,
    number: int,
    issue_date: datetime,
    region_code: Optional[str] = None,
    model: Optional[str] = None,
) -> str:
    base_key = build_base_key(
        issuer_tax_id, series, number, issue_date, region_code, model
    )
    return f"{base_key}{calculate_check_digit(base_key)}"
