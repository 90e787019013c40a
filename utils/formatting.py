"""
Formatting utilities.
"""

from datetime import datetime, timezone

NANOS_PER_SECOND = 1_000_000_000


def format_currency(amount: int, currency: str = "INR") -> str:
    """
    Format an integer amount as currency.

    Args:
        amount: The amount in minor units (e.g., paise, not rupees).
        currency: Currency code (default INR).

    Returns:
        Formatted currency string.
    """
    symbols = {
        "INR": "₹",
        "GBP": "£",
        "USD": "$",
        "EUR": "€",
    }
    symbol = symbols.get(currency, currency + " ")
    major, minor = divmod(amount, 100)
    return f"{symbol}{major:,}.{minor:02d}"


def format_timestamp(timestamp_ns: int) -> str:
    """
    Format a nanosecond epoch timestamp as an ISO 8601 UTC string.

    Args:
        timestamp_ns: Nanoseconds since the Unix epoch.

    Returns:
        ISO 8601 string with second precision.
    """
    seconds = timestamp_ns // NANOS_PER_SECOND
    return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()
