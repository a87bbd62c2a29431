from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

LIFECYCLE_TRANSITIONS = Counter(
    "domainmapper_lifecycle_transitions_total",
    "Domain mapping state transitions",
    ["transition"],  # added, verified, approved, rejected, live, deleted, transferred
)

VERIFICATION_CHECKS = Counter(
    "domainmapper_verification_checks_total",
    "TXT challenge checks",
    ["result"],  # verified, mismatch, no_records
)

DNS_LOOKUP_DURATION = Histogram(
    "domainmapper_dns_lookup_duration_seconds",
    "DNS lookup latency",
    ["record_type"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

CERTIFICATE_PROBES = Counter(
    "domainmapper_certificate_probes_total",
    "TLS certificate probes",
    ["result"],  # present, absent
)

CERTIFICATES_EXPIRING = Gauge(
    "domainmapper_certificates_expiring",
    "Certificates within the expiry warning window at the last sweep",
)

CDN_API_REQUESTS = Counter(
    "domainmapper_cdn_api_requests_total",
    "CDN API calls",
    ["operation", "outcome"],
)

HEALTH_RESPONSE_TIME = Histogram(
    "domainmapper_health_response_seconds",
    "Response time of live custom domains",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
