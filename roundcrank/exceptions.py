class CrankError(Exception):
    """Base error for the crank."""
    pass

class ConfigurationError(CrankError):
    """Raised when credentials or endpoints required by a job are missing."""
    pass

class LedgerError(CrankError):
    """Base error for ledger gateway failures."""
    pass

class LedgerTimeoutError(LedgerError):
    """Raised when the ledger fails to respond within the timeout period."""
    pass

class LedgerNetworkError(LedgerError):
    """Raised when the ledger gateway is unreachable."""
    pass

class LedgerAuthError(LedgerError):
    """Raised when the crank authority is not accepted by the ledger."""
    pass

class LedgerRateLimitError(LedgerError):
    """Raised when the ledger gateway throttles the crank."""
    pass

class LedgerRejectedError(LedgerError):
    """Raised when the ledger refuses a transition because its precondition does not hold."""
    pass

class OracleError(CrankError):
    """Raised when the randomness oracle cannot be queried."""
    pass
