from .orders import OrderStore, snapshot_values

__all__ = ["OrderStore", "snapshot_values"]
