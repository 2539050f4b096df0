"""Access token issuance and rotation."""

from gigachatui.auth.credentials import CredentialSupply, basic_auth_secret, fetch_credential

__all__ = [
    "CredentialSupply",
    "basic_auth_secret",
    "fetch_credential",
]
