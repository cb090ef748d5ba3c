"""
Billing Kernel

The invariant-bearing core shared by the billing engines and modules:
- Typed, coded exceptions
- Structured JSON logging
- Decimal money and currency values with precision-derived rounding
- Transactional persistence and the locked invoice sequence counter
"""

__version__ = "0.1.0"
