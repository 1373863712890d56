class BillingError(Exception):
    """Base class for billing-cycle failures that abort a single account."""


class AccountConfigurationError(BillingError):
    """The account cannot be billed as configured (no plan, bad billing day)."""


class InstrumentAlreadyConsumed(BillingError):
    def __init__(self, kind: str, instrument_id: str):
        super().__init__(f"{kind} {instrument_id} is no longer Unused")
        self.kind = kind
        self.instrument_id = instrument_id
