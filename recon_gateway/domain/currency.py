"""Static FX rate table and currency peg equivalence"""

from typing import Dict, Optional

PIVOT_CURRENCY = "USD"

# Fallback mid-market rates, used instead of a live feed
FALLBACK_FX_RATES: Dict[str, Dict[str, float]] = {
    "USD": {
        "EUR": 0.92, "GBP": 0.79, "CAD": 1.36, "AUD": 1.53, "CHF": 0.88, "JPY": 149.5,
        "MXN": 17.2, "BRL": 4.97, "ANG": 1.79, "AWG": 1.79, "XCG": 1.79, "BBD": 2.0,
        "TTD": 6.8, "JMD": 156.0,
    },
    "EUR": {"USD": 1.09, "GBP": 0.86, "CAD": 1.48, "AUD": 1.66, "CHF": 0.96, "JPY": 163.0},
    "GBP": {"USD": 1.27, "EUR": 1.16, "CAD": 1.72, "AUD": 1.93},
    # Caribbean guilders, pegged to USD at ~1.79
    "ANG": {"USD": 0.56, "EUR": 0.51, "GBP": 0.44, "AWG": 1.0, "XCG": 1.0},
    "AWG": {"USD": 0.56, "EUR": 0.51, "GBP": 0.44, "ANG": 1.0, "XCG": 1.0},
    "XCG": {"USD": 0.56, "EUR": 0.51, "GBP": 0.44, "ANG": 1.0, "AWG": 1.0},
    "BBD": {"USD": 0.50, "EUR": 0.46},
    "BSD": {"USD": 1.0, "EUR": 0.92},
    "JMD": {"USD": 0.0064, "EUR": 0.0059},
    "TTD": {"USD": 0.15, "EUR": 0.14},
    "XCD": {"USD": 0.37, "EUR": 0.34},
    "CAD": {"USD": 0.74, "EUR": 0.68, "GBP": 0.58},
    "AUD": {"USD": 0.65, "EUR": 0.60, "GBP": 0.52},
    "CHF": {"USD": 1.14, "EUR": 1.04},
    "JPY": {"USD": 0.0067, "EUR": 0.0061},
    "MXN": {"USD": 0.058, "EUR": 0.053},
    "BRL": {"USD": 0.20, "EUR": 0.18},
}

# Currencies pegged 1:1 to a reference currency: matched without conversion
PEGGED_CURRENCIES: Dict[str, tuple] = {
    "USD": ("BSD", "BMD", "PAB"),
    "ANG": ("XCG", "AWG"),
    "XCG": ("ANG", "AWG"),
    "AWG": ("ANG", "XCG"),
}


def normalize_currency(code: Optional[str]) -> str:
    """Upper-case a currency code, defaulting to USD when missing"""
    return (code or PIVOT_CURRENCY).strip().upper() or PIVOT_CURRENCY


def _lookup(from_currency: str, to_currency: str) -> Optional[float]:
    direct = FALLBACK_FX_RATES.get(from_currency, {}).get(to_currency)
    if direct:
        return direct
    inverse = FALLBACK_FX_RATES.get(to_currency, {}).get(from_currency)
    if inverse:
        return 1 / inverse
    return None


def get_fx_rate(from_currency: str, to_currency: str) -> Optional[float]:
    """
    Resolve a conversion rate between two currencies.

    Order: identity, direct, inverse, then bridged through USD.
    Returns None when no path exists; callers degrade instead of failing.
    """
    source = normalize_currency(from_currency)
    target = normalize_currency(to_currency)

    if source == target:
        return 1.0

    rate = _lookup(source, target)
    if rate is not None:
        return rate

    if PIVOT_CURRENCY not in (source, target):
        to_pivot = _lookup(source, PIVOT_CURRENCY)
        from_pivot = _lookup(PIVOT_CURRENCY, target)
        if to_pivot and from_pivot:
            return to_pivot * from_pivot

    return None


def convert_currency(amount: float, from_currency: str, to_currency: str) -> Optional[float]:
    rate = get_fx_rate(from_currency, to_currency)
    if rate is None:
        return None
    return amount * rate


def currencies_equivalent(currency_a: Optional[str], currency_b: Optional[str]) -> bool:
    """True if the codes are equal or pegged together (no FX needed)"""
    first = normalize_currency(currency_a)
    second = normalize_currency(currency_b)

    if first == second:
        return True

    for base, pegged in PEGGED_CURRENCIES.items():
        if (first == base and second in pegged) or (second == base and first in pegged):
            return True

    return False
