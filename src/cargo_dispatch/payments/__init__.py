from .gateway import CashGatewayAdapter, GatewayAdapter, HttpGatewayAdapter, sign_reference
from .ledger import PaymentLedger

__all__ = [
    "CashGatewayAdapter",
    "GatewayAdapter",
    "HttpGatewayAdapter",
    "PaymentLedger",
    "sign_reference",
]
