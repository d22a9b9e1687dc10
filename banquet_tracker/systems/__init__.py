from .accrual import accrue_with_boosts, clamp_amount, current_amount
from .coordinator import MutationCoordinator, StockReading
from .dashboard import DashboardSession
from .multiplier import active_boost, active_multiplier, resolve_multiplier
from .transfer import TradeResult, TransferEngine, TransferResult

__all__ = [
    "accrue_with_boosts",
    "clamp_amount",
    "current_amount",
    "MutationCoordinator",
    "StockReading",
    "DashboardSession",
    "active_boost",
    "active_multiplier",
    "resolve_multiplier",
    "TradeResult",
    "TransferEngine",
    "TransferResult",
]
