from importlib import import_module

__all__ = [
    "CopyEngine",
    "LedgerStore",
    "PolymarketClient",
    "OrderExecutor",
    "TradeCoordinator",
    "TradeLifecycleManager",
    "WalletClassifier",
]

_LAZY_EXPORTS = {
    "CopyEngine": ("services.copy_engine", "CopyEngine"),
    "LedgerStore": ("services.ledger_store", "LedgerStore"),
    "PolymarketClient": ("services.polymarket", "PolymarketClient"),
    "OrderExecutor": ("services.order_executor", "OrderExecutor"),
    "TradeCoordinator": ("services.trade_coordinator", "TradeCoordinator"),
    "TradeLifecycleManager": ("services.trade_lifecycle", "TradeLifecycleManager"),
    "WalletClassifier": ("services.wallet_classifier", "WalletClassifier"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
