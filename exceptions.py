"""
Error taxonomy for the liquidation pipeline.

Everything except ConfigError is recoverable: the component that catches it
logs a reason and the loop carries on with the next batch, window or order.
"""


class ReaperError(Exception):
    """Base exception for all pipeline errors."""


class ConfigError(ReaperError):
    """Invalid or missing configuration. Raised once, at startup."""


class TransportError(ReaperError):
    """RPC / node failure. The current batch or window is abandoned."""


class DecodeError(ReaperError):
    """Return data could not be decoded for a single account."""


class StalePlanError(ReaperError):
    """The published order plan is too old to act on."""

    def __init__(self, age_sec, max_age_sec):
        self.age_sec = age_sec
        self.max_age_sec = max_age_sec
        super().__init__(f"plan is {age_sec:.0f}s old (max {max_age_sec}s)")


class GasPriceTooHigh(ReaperError):
    """Network gas price is above the order's cap. A market condition, not an account fault."""

    def __init__(self, gas_price, cap):
        self.gas_price = gas_price
        self.cap = cap
        super().__init__(f"gas price {gas_price} > cap {cap}")


class SimulationReverted(ReaperError):
    """Settlement simulation or broadcast failed; `kind` is SKIP_HEALTHY or FAIL."""

    def __init__(self, kind, reason):
        self.kind = kind
        self.reason = reason
        super().__init__(f"{kind}: {reason}")


class StoreReadError(ReaperError):
    """A state file exists but could not be read. Callers must not write over it."""
