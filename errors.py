"""
errors raised by the referral / commission engines.

business-rule violations subclass ValueError so callers (and the HTTP layer)
can treat them as user-correctable. consistency / infrastructure problems
subclass RuntimeError.
"""


class InvalidReferralCode(ValueError):
    def __init__(self, code: str):
        super().__init__(f"Referral code '{code}' is invalid or inactive.")
        self.code = code


class DuplicateMembership(ValueError):
    def __init__(self, creator_id: str):
        super().__init__(f"Creator {creator_id} is already placed in the network.")
        self.creator_id = creator_id


class ReferralCycle(ValueError):
    pass


class CreatorNotFound(ValueError):
    pass


class CreatorAlreadyExists(ValueError):
    pass


class InvalidAmount(ValueError):
    pass


class InsufficientBalance(ValueError):
    pass


class BrokenReferralChain(RuntimeError):
    """an upline link points at a creator that no longer resolves."""

    def __init__(self, creator_id: str, missing_referrer_id: str):
        super().__init__(
            f"Referrer {missing_referrer_id} of creator {creator_id} not found."
        )
        self.creator_id = creator_id
        self.missing_referrer_id = missing_referrer_id


class ConcurrentBalanceUpdateConflict(RuntimeError):
    """retries exhausted while updating balances; the whole event may be retried."""


class CodeGenerationExhausted(RuntimeError):
    pass
