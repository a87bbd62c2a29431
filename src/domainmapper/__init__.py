"""domainmapper: custom domain mapping for multi-tenant storefronts.

Tenants attach their own domains (e.g. shop.example.com) to a storefront.
A mapping is proven with a DNS TXT challenge, approved by an administrator,
given a certificate and served through a generated reverse proxy config.
"""

__version__ = "0.1.0"
