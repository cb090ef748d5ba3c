"""Currency -- ISO 4217 registry and minor-unit rounding."""

from dataclasses import dataclass
from decimal import Decimal
from typing import ClassVar

from billing_kernel.exceptions import InvalidCurrencyError


@dataclass(frozen=True)
class CurrencyInfo:
    """One ISO 4217 currency and the number of digits in its minor unit."""

    code: str
    decimal_places: int
    name: str

    @property
    def minor_unit(self) -> Decimal:
        """Smallest representable amount, e.g. 0.01 for USD, 1 for JPY."""
        return Decimal(1).scaleb(-self.decimal_places)


class CurrencyRegistry:
    """
    Registry of the ISO 4217 currencies an invoice may be denominated in.

    The list covers the region's local currencies, the usual settlement
    currencies and a few zero- and three-decimal codes so minor-unit
    rounding is exercised beyond two decimals.
    """

    _CURRENCIES: ClassVar[dict[str, CurrencyInfo]] = {
        info.code: info
        for info in (
            CurrencyInfo("VES", 2, "Venezuelan Bolivar Soberano"),
            CurrencyInfo("VED", 2, "Venezuelan Bolivar Digital"),
            CurrencyInfo("USD", 2, "US Dollar"),
            CurrencyInfo("EUR", 2, "Euro"),
            CurrencyInfo("GBP", 2, "Pound Sterling"),
            CurrencyInfo("CAD", 2, "Canadian Dollar"),
            CurrencyInfo("CHF", 2, "Swiss Franc"),
            CurrencyInfo("CNY", 2, "Chinese Yuan"),
            CurrencyInfo("ARS", 2, "Argentine Peso"),
            CurrencyInfo("BOB", 2, "Bolivian Boliviano"),
            CurrencyInfo("BRL", 2, "Brazilian Real"),
            CurrencyInfo("COP", 2, "Colombian Peso"),
            CurrencyInfo("CRC", 2, "Costa Rican Colon"),
            CurrencyInfo("DOP", 2, "Dominican Peso"),
            CurrencyInfo("GTQ", 2, "Guatemalan Quetzal"),
            CurrencyInfo("HNL", 2, "Honduran Lempira"),
            CurrencyInfo("MXN", 2, "Mexican Peso"),
            CurrencyInfo("NIO", 2, "Nicaraguan Cordoba"),
            CurrencyInfo("PAB", 2, "Panamanian Balboa"),
            CurrencyInfo("PEN", 2, "Peruvian Sol"),
            CurrencyInfo("TTD", 2, "Trinidad and Tobago Dollar"),
            CurrencyInfo("UYU", 2, "Uruguayan Peso"),
            CurrencyInfo("CLP", 0, "Chilean Peso"),
            CurrencyInfo("PYG", 0, "Paraguayan Guarani"),
            CurrencyInfo("JPY", 0, "Japanese Yen"),
            CurrencyInfo("KRW", 0, "South Korean Won"),
            CurrencyInfo("BHD", 3, "Bahraini Dinar"),
            CurrencyInfo("KWD", 3, "Kuwaiti Dinar"),
            CurrencyInfo("TND", 3, "Tunisian Dinar"),
            CurrencyInfo("CLF", 4, "Chilean Unidad de Fomento"),
        )
    }

    @classmethod
    def is_valid(cls, code: str) -> bool:
        """Check if a currency code is a registered ISO 4217 code."""
        if not code or not isinstance(code, str):
            return False
        return code.upper().strip() in cls._CURRENCIES

    @classmethod
    def get_info(cls, code: str) -> CurrencyInfo:
        """Return the registry entry, raising InvalidCurrencyError if unknown."""
        return cls._CURRENCIES[cls.validate(code)]

    @classmethod
    def get_decimal_places(cls, code: str) -> int:
        return cls.get_info(code).decimal_places

    @classmethod
    def get_minor_unit(cls, code: str) -> Decimal:
        return cls.get_info(code).minor_unit

    @classmethod
    def validate(cls, code: str) -> str:
        """Validate and normalize a currency code."""
        if not code or not isinstance(code, str):
            raise InvalidCurrencyError(str(code))

        normalized = code.upper().strip()
        if len(normalized) != 3 or normalized not in cls._CURRENCIES:
            raise InvalidCurrencyError(code)
        return normalized

    @classmethod
    def all_codes(cls) -> frozenset[str]:
        return frozenset(cls._CURRENCIES)
