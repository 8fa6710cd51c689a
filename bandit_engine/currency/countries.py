"""Static ISO country to currency lookup."""
from __future__ import annotations

from typing import Dict

BASE_CURRENCY = "USD"

_EURO_AREA = ("EU", "DE", "FR", "IT", "ES", "NL", "BE", "AT", "IE", "PT", "GR", "FI")

COUNTRY_CURRENCY: Dict[str, str] = {
    "US": "USD",
    "CA": "CAD",
    "GB": "GBP",
    **{code: "EUR" for code in _EURO_AREA},
    "JP": "JPY",
    "AU": "AUD",
    "CH": "CHF",
    "CN": "CNY",
    "IN": "INR",
    "BR": "BRL",
    "KR": "KRW",
    "MX": "MXN",
    "RU": "RUB",
    "ZA": "ZAR",
    "SG": "SGD",
    "HK": "HKD",
    "NO": "NOK",
    "SE": "SEK",
    "DK": "DKK",
    "PL": "PLN",
    "CZ": "CZK",
    "HU": "HUF",
    "RO": "RON",
    "BG": "BGN",
    "TR": "TRY",
    "IL": "ILS",
    "TH": "THB",
    "MY": "MYR",
    "ID": "IDR",
    "PH": "PHP",
    "VN": "VND",
    "NZ": "NZD",
    "AE": "AED",
    "SA": "SAR",
    "NG": "NGN",
    "EG": "EGP",
}


def currency_for_country(country: str) -> str:
    """Likely currency for a country code; the base currency when unknown."""
    return COUNTRY_CURRENCY.get((country or "").strip().upper(), BASE_CURRENCY)
