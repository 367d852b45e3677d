"""Static ISO currency reference data. No persistence."""

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from expense_tracker.utils.error_handling import NotFoundError


@dataclass(frozen=True)
class CurrencyInfo:
    code: str
    name: str
    symbol: str
    countryCode: str
    countryName: str
    flag: str
    isSupported: bool = True


CURRENCIES: List[CurrencyInfo] = [
    CurrencyInfo("USD", "US Dollar", "$", "US", "United States", "🇺🇸"),
    CurrencyInfo("EUR", "Euro", "€", "EU", "European Union", "🇪🇺"),
    CurrencyInfo("GBP", "British Pound Sterling", "£", "GB", "United Kingdom", "🇬🇧"),
    CurrencyInfo("JPY", "Japanese Yen", "¥", "JP", "Japan", "🇯🇵"),
    CurrencyInfo("INR", "Indian Rupee", "₹", "IN", "India", "🇮🇳"),
    CurrencyInfo("CAD", "Canadian Dollar", "C$", "CA", "Canada", "🇨🇦"),
    CurrencyInfo("AUD", "Australian Dollar", "A$", "AU", "Australia", "🇦🇺"),
    CurrencyInfo("CHF", "Swiss Franc", "Fr", "CH", "Switzerland", "🇨🇭"),
    CurrencyInfo("CNY", "Chinese Yuan", "¥", "CN", "China", "🇨🇳"),
    CurrencyInfo("SEK", "Swedish Krona", "kr", "SE", "Sweden", "🇸🇪"),
    CurrencyInfo("NOK", "Norwegian Krone", "kr", "NO", "Norway", "🇳🇴"),
    CurrencyInfo("DKK", "Danish Krone", "kr", "DK", "Denmark", "🇩🇰"),
    CurrencyInfo("PLN", "Polish Zloty", "zł", "PL", "Poland", "🇵🇱"),
    CurrencyInfo("CZK", "Czech Koruna", "Kč", "CZ", "Czech Republic", "🇨🇿"),
    CurrencyInfo("HUF", "Hungarian Forint", "Ft", "HU", "Hungary", "🇭🇺"),
    CurrencyInfo("KRW", "South Korean Won", "₩", "KR", "South Korea", "🇰🇷"),
    CurrencyInfo("SGD", "Singapore Dollar", "S$", "SG", "Singapore", "🇸🇬"),
    CurrencyInfo("HKD", "Hong Kong Dollar", "HK$", "HK", "Hong Kong", "🇭🇰"),
    CurrencyInfo("MYR", "Malaysian Ringgit", "RM", "MY", "Malaysia", "🇲🇾"),
    CurrencyInfo("THB", "Thai Baht", "฿", "TH", "Thailand", "🇹🇭"),
    CurrencyInfo("IDR", "Indonesian Rupiah", "Rp", "ID", "Indonesia", "🇮🇩"),
    CurrencyInfo("PHP", "Philippine Peso", "₱", "PH", "Philippines", "🇵🇭"),
    CurrencyInfo("VND", "Vietnamese Dong", "₫", "VN", "Vietnam", "🇻🇳"),
    CurrencyInfo("BRL", "Brazilian Real", "R$", "BR", "Brazil", "🇧🇷"),
    CurrencyInfo("MXN", "Mexican Peso", "$", "MX", "Mexico", "🇲🇽"),
    CurrencyInfo("ARS", "Argentine Peso", "$", "AR", "Argentina", "🇦🇷"),
    CurrencyInfo("CLP", "Chilean Peso", "$", "CL", "Chile", "🇨🇱"),
    CurrencyInfo("COP", "Colombian Peso", "$", "CO", "Colombia", "🇨🇴"),
    CurrencyInfo("PEN", "Peruvian Sol", "S/", "PE", "Peru", "🇵🇪"),
    CurrencyInfo("NZD", "New Zealand Dollar", "NZ$", "NZ", "New Zealand", "🇳🇿"),
    CurrencyInfo("ZAR", "South African Rand", "R", "ZA", "South Africa", "🇿🇦"),
    CurrencyInfo("EGP", "Egyptian Pound", "E£", "EG", "Egypt", "🇪🇬"),
    CurrencyInfo("NGN", "Nigerian Naira", "₦", "NG", "Nigeria", "🇳🇬"),
    CurrencyInfo("KES", "Kenyan Shilling", "KSh", "KE", "Kenya", "🇰🇪"),
    CurrencyInfo("AED", "UAE Dirham", "د.إ", "AE", "United Arab Emirates", "🇦🇪"),
    CurrencyInfo("SAR", "Saudi Riyal", "ر.س", "SA", "Saudi Arabia", "🇸🇦"),
    CurrencyInfo("QAR", "Qatari Riyal", "ر.ق", "QA", "Qatar", "🇶🇦"),
    CurrencyInfo("KWD", "Kuwaiti Dinar", "د.ك", "KW", "Kuwait", "🇰🇼"),
    CurrencyInfo("BHD", "Bahraini Dinar", "ب.د", "BH", "Bahrain", "🇧🇭"),
    CurrencyInfo("OMR", "Omani Rial", "ر.ع.", "OM", "Oman", "🇴🇲"),
    CurrencyInfo("JOD", "Jordanian Dinar", "د.ا", "JO", "Jordan", "🇯🇴"),
    CurrencyInfo("LBP", "Lebanese Pound", "ل.ل", "LB", "Lebanon", "🇱🇧"),
    CurrencyInfo("ILS", "Israeli Shekel", "₪", "IL", "Israel", "🇮🇱"),
    CurrencyInfo("TRY", "Turkish Lira", "₺", "TR", "Turkey", "🇹🇷"),
    CurrencyInfo("RUB", "Russian Ruble", "₽", "RU", "Russia", "🇷🇺"),
    CurrencyInfo("UAH", "Ukrainian Hryvnia", "₴", "UA", "Ukraine", "🇺🇦"),
    CurrencyInfo("RON", "Romanian Leu", "lei", "RO", "Romania", "🇷🇴"),
    CurrencyInfo("BGN", "Bulgarian Lev", "лв", "BG", "Bulgaria", "🇧🇬"),
    CurrencyInfo("HRK", "Croatian Kuna", "kn", "HR", "Croatia", "🇭🇷"),
    CurrencyInfo("RSD", "Serbian Dinar", "дин", "RS", "Serbia", "🇷🇸"),
    CurrencyInfo("ISK", "Icelandic Krona", "kr", "IS", "Iceland", "🇮🇸"),
    CurrencyInfo("TWD", "Taiwan Dollar", "NT$", "TW", "Taiwan", "🇹🇼"),
    CurrencyInfo("BDT", "Bangladeshi Taka", "৳", "BD", "Bangladesh", "🇧🇩"),
    CurrencyInfo("PKR", "Pakistani Rupee", "₨", "PK", "Pakistan", "🇵🇰"),
    CurrencyInfo("LKR", "Sri Lankan Rupee", "Rs", "LK", "Sri Lanka", "🇱🇰"),
    CurrencyInfo("NPR", "Nepalese Rupee", "₨", "NP", "Nepal", "🇳🇵"),
    CurrencyInfo("MMK", "Myanmar Kyat", "K", "MM", "Myanmar", "🇲🇲"),
    CurrencyInfo("KHR", "Cambodian Riel", "៛", "KH", "Cambodia", "🇰🇭"),
    CurrencyInfo("LAK", "Lao Kip", "₭", "LA", "Laos", "🇱🇦"),
]

POPULAR_CODES = ("USD", "EUR", "GBP", "JPY", "INR", "CAD", "AUD", "CHF", "CNY", "BRL")

REGION_COUNTRIES: Dict[str, List[str]] = {
    "europe": ["EU", "GB", "CH", "SE", "NO", "DK", "PL", "CZ", "HU", "RO", "BG", "HR", "RS", "IS"],
    "asia": ["JP", "IN", "CN", "KR", "SG", "HK", "MY", "TH", "ID", "PH", "VN", "TW", "BD", "PK", "LK", "NP", "MM", "KH", "LA"],
    "americas": ["US", "CA", "BR", "MX", "AR", "CL", "CO", "PE"],
    "middle_east": ["AE", "SA", "QA", "KW", "BH", "OM", "JO", "LB", "IL", "TR"],
    "africa": ["ZA", "EG", "NG", "KE"],
    "oceania": ["AU", "NZ"],
}


class CurrencyNotFound(NotFoundError):
    def __init__(self, code: str):
        super().__init__(f"Currency '{code}' not found", error_code="CURRENCY_NOT_FOUND", context={"code": code})


def _listing(currencies: List[CurrencyInfo]) -> Dict[str, Any]:
    return {
        "currencies": [asdict(c) for c in currencies],
        "totalCount": len(currencies),
        "supportedCount": sum(1 for c in currencies if c.isSupported),
    }


def find_currency(code: str) -> Optional[CurrencyInfo]:
    code = (code or "").strip().upper()
    return next((c for c in CURRENCIES if c.code == code), None)


def get_currency(code: str) -> CurrencyInfo:
    currency = find_currency(code)
    if currency is None:
        raise CurrencyNotFound(code)
    return currency


def list_all() -> Dict[str, Any]:
    return _listing(CURRENCIES)


def list_supported() -> Dict[str, Any]:
    return _listing([c for c in CURRENCIES if c.isSupported])


def list_popular() -> Dict[str, Any]:
    return _listing([c for c in (find_currency(code) for code in POPULAR_CODES) if c is not None])


def list_by_region(region: str) -> Dict[str, Any]:
    countries = REGION_COUNTRIES.get((region or "").lower(), [])
    return _listing([c for c in CURRENCIES if c.countryCode in countries])


def search(query: str) -> Dict[str, Any]:
    """Case-insensitive substring match on code, name or country."""
    needle = (query or "").strip().lower()
    if not needle:
        return _listing([])
    return _listing(
        [c for c in CURRENCIES if needle in c.code.lower() or needle in c.name.lower() or needle in c.countryName.lower()]
    )


def support_status(code: str) -> Dict[str, Any]:
    currency = find_currency(code)
    return {
        "code": code.upper(),
        "isSupported": bool(currency and currency.isSupported),
        "exists": currency is not None,
        "symbol": currency.symbol if currency else "",
        "name": currency.name if currency else "",
    }


def find_by_symbol(symbol: str) -> Optional[CurrencyInfo]:
    return next((c for c in CURRENCIES if c.symbol == symbol), None)


def is_symbol_supported(symbol: str) -> bool:
    currency = find_by_symbol(symbol)
    return bool(currency and currency.isSupported)
