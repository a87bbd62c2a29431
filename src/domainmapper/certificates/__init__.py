"""Certificate inspection and provisioning."""

from domainmapper.certificates.inspector import (
    CertificateInfo,
    CertificateInspector,
    IssuerCategory,
    classify_issuer,
    parse_certificate,
)

__all__ = [
    "CertificateInfo",
    "CertificateInspector",
    "IssuerCategory",
    "classify_issuer",
    "parse_certificate",
]
