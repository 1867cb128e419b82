from azconverge.credentials.resolver import (
    CredentialBundle,
    CredentialKind,
    CredentialResolver,
    decode_kubeconfig,
)

__all__ = ["CredentialBundle", "CredentialKind", "CredentialResolver", "decode_kubeconfig"]
