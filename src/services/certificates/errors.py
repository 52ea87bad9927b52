"""
Certificate domain errors

Each error carries the HTTP status it maps to; the API layer renders them as
{"error": message, "details": details}.
"""
from typing import Any, Optional


class CertificateServiceError(Exception):
    """Base class for user-facing certificate errors"""

    status_code: int = 400

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class UserNotFoundError(CertificateServiceError):
    status_code = 404

    def __init__(self, user_id: int):
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class RuleNotFoundError(CertificateServiceError):
    status_code = 404

    def __init__(self, rule_id: int):
        super().__init__(f"Certificate rule {rule_id} not found")
        self.rule_id = rule_id


class CertificateNotFoundError(CertificateServiceError):
    status_code = 404


class ActivityNotFoundError(CertificateServiceError):
    status_code = 404

    def __init__(self, activity_id: int):
        super().__init__(f"Activity {activity_id} not found")
        self.activity_id = activity_id


class AlreadyGrantedError(CertificateServiceError):
    """A grant for (user, rule) already exists"""

    def __init__(self, user_id: int, rule_id: int):
        super().__init__("Certificate already received", {"user_id": user_id, "rule_id": rule_id})
        self.user_id = user_id
        self.rule_id = rule_id


class InsufficientPointsError(CertificateServiceError):
    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient points: {required} required, {available} available",
            {"required": required, "available": available},
        )
        self.required = required
        self.available = available


class AlreadyCheckedInError(CertificateServiceError):
    pass


class ConditionNotMetError(CertificateServiceError):
    """Automatic rule redeemed manually without meeting its condition"""

    status_code = 403


class InvalidRuleError(CertificateServiceError):
    pass


class InvalidWalletError(CertificateServiceError):
    pass


class WalletInUseError(CertificateServiceError):
    status_code = 409


class NoWalletError(CertificateServiceError):
    def __init__(self, user_id: int):
        super().__init__("Wallet address is not bound", {"user_id": user_id})
        self.user_id = user_id


class ChainSyncRequestError(CertificateServiceError):
    """apply-chain for a grant that is missing or not in state none"""


class NotCertificateHolderError(CertificateServiceError):
    status_code = 403


class LedgerUnavailableError(CertificateServiceError):
    status_code = 503


class MintFailedError(CertificateServiceError):
    """Ledger mint failed; message is already user-facing"""

    status_code = 502

    def __init__(self, message: str, terminal: bool = False, details: Optional[Any] = None):
        super().__init__(message, details)
        self.terminal = terminal
