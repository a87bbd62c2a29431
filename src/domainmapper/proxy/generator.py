"""Reverse proxy configuration for approved custom domains.

Generation is pure: the same mapping and upstream always yield the same
text, and nothing touches the network or filesystem. Operators hand the
output to nginx or Apache.
"""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass

from domainmapper.core.exceptions import ValidationError
from domainmapper.domains.models import SslStatus
from domainmapper.domains.verification import require_valid_domain

_UPSTREAM_RE = re.compile(
    r"^https?://"
    r"[A-Za-z0-9](?:[A-Za-z0-9.-]*[A-Za-z0-9])?"
    r"(?::\d{1,5})?"
    r"(?:/[A-Za-z0-9._~/-]*)?$"
)

_SSL_PROTOCOLS = "TLSv1.2 TLSv1.3"
_SSL_CIPHERS = (
    "ECDHE-RSA-AES256-GCM-SHA512:DHE-RSA-AES256-GCM-SHA512:"
    "ECDHE-RSA-AES256-GCM-SHA384:DHE-RSA-AES256-GCM-SHA384"
)


@dataclass(frozen=True)
class ProxyConfig:
    """Generated server blocks for one domain."""

    domain: str
    nginx: str
    apache: str

    def to_dict(self) -> dict[str, str]:
        return {"domain": self.domain, "nginx": self.nginx, "apache": self.apache}


def validate_upstream(upstream_url: str) -> str:
    """Accept only plain http(s)://host[:port][/path] URLs, without a trailing slash."""
    if not upstream_url or not _UPSTREAM_RE.fullmatch(upstream_url):
        raise ValidationError(
            f"Invalid upstream URL '{upstream_url}'", {"upstream_url": upstream_url}
        )
    return upstream_url.rstrip("/")


class ProxyConfigGenerator:
    """Builds nginx and Apache server blocks for a single domain."""

    def __init__(self, certs_dir: str = "/etc/ssl/domainmapper") -> None:
        self.certs_dir = certs_dir.rstrip("/") or "/"

    def cert_paths(self, domain: str) -> tuple[str, str]:
        """Certificate and key file paths for a domain."""
        return (
            posixpath.join(self.certs_dir, f"{domain}.crt"),
            posixpath.join(self.certs_dir, f"{domain}.key"),
        )

    def generate(self, domain: str, ssl_status: SslStatus, upstream_url: str) -> ProxyConfig:
        """Generate configuration text.

        Args:
            domain: Normalized domain of the mapping.
            ssl_status: Certificate mode; anything but NONE adds TLS directives.
            upstream_url: Backend that requests are proxied to.

        Returns:
            ProxyConfig with nginx and apache text.

        Raises:
            ValidationError: If the domain or upstream URL is malformed.
        """
        require_valid_domain(domain)
        upstream = validate_upstream(upstream_url)
        ssl_status = SslStatus(ssl_status)
        tls = ssl_status != SslStatus.NONE
        return ProxyConfig(
            domain=domain,
            nginx=self._nginx(domain, upstream, tls),
            apache=self._apache(domain, upstream, tls),
        )

    def _nginx(self, domain: str, upstream: str, tls: bool) -> str:
        location = [
            "    location / {",
            f"        proxy_pass {upstream};",
            "        proxy_set_header Host $host;",
            "        proxy_set_header X-Real-IP $remote_addr;",
            "        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;",
            "        proxy_set_header X-Forwarded-Proto $scheme;",
            "    }",
        ]

        if not tls:
            lines = [
                "server {",
                "    listen 80;",
                f"    server_name {domain};",
                "",
                *location,
                "}",
            ]
            return "\n".join(lines) + "\n"

        cert, key = self.cert_paths(domain)
        lines = [
            "server {",
            "    listen 80;",
            f"    server_name {domain};",
            "    return 301 https://$host$request_uri;",
            "}",
            "",
            "server {",
            "    listen 443 ssl;",
            f"    server_name {domain};",
            "",
            f"    ssl_certificate {cert};",
            f"    ssl_certificate_key {key};",
            f"    ssl_protocols {_SSL_PROTOCOLS};",
            f"    ssl_ciphers {_SSL_CIPHERS};",
            "    ssl_prefer_server_ciphers off;",
            "",
            *location,
            "}",
        ]
        return "\n".join(lines) + "\n"

    def _apache(self, domain: str, upstream: str, tls: bool) -> str:
        proxy = [
            "    ProxyPreserveHost On",
            "    ProxyAddHeaders On",
            '    RequestHeader set X-Real-IP "%{REMOTE_ADDR}s"',
            f"    ProxyPass / {upstream}/",
            f"    ProxyPassReverse / {upstream}/",
        ]

        if not tls:
            lines = [
                "<VirtualHost *:80>",
                f"    ServerName {domain}",
                '    RequestHeader set X-Forwarded-Proto "http"',
                *proxy,
                "</VirtualHost>",
            ]
            return "\n".join(lines) + "\n"

        cert, key = self.cert_paths(domain)
        lines = [
            "<VirtualHost *:80>",
            f"    ServerName {domain}",
            f"    Redirect permanent / https://{domain}/",
            "</VirtualHost>",
            "",
            "<VirtualHost *:443>",
            f"    ServerName {domain}",
            "    SSLEngine on",
            f"    SSLCertificateFile {cert}",
            f"    SSLCertificateKeyFile {key}",
            "    SSLProtocol -all +TLSv1.2 +TLSv1.3",
            "",
            '    RequestHeader set X-Forwarded-Proto "https"',
            *proxy,
            "</VirtualHost>",
        ]
        return "\n".join(lines) + "\n"
