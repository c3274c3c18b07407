class ToxVaultError(Exception):
    pass


class KeyDerivationFailed(ToxVaultError):
    pass


class DecryptionFailed(ToxVaultError):
    """Wrong key, tampered data and truncated input all end up here."""


class ContractViolation(ToxVaultError):
    """A caller broke an internal invariant. Never caught by the library."""
