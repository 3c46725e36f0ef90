"""OpenTelemetry metrics for the PKI generator."""

from opentelemetry import metrics

# Get meter for gmpki module
meter = metrics.get_meter("gmpki")

keys_generated_total = meter.create_counter(
    name="gmpki_keys_generated_total",
    description="Total SM2 key pairs generated",
    unit="1",
)

certificates_signed_total = meter.create_counter(
    name="gmpki_certificates_signed_total",
    description="Total certificates signed",
    unit="1",
)

certificate_signing_duration = meter.create_histogram(
    name="gmpki_certificate_signing_duration_seconds",
    description="Certificate signing and re-parse duration in seconds",
    unit="s",
)

entities_generated_total = meter.create_counter(
    name="gmpki_entities_generated_total",
    description="Total entities written to disk",
    unit="1",
)

failures_total = meter.create_counter(
    name="gmpki_failures_total",
    description="Total generation failures",
    unit="1",
)


class PKIMetrics:
    """Facade for generator metrics with proper labels."""

    def record_key_generated(self) -> None:
        keys_generated_total.add(1)

    def record_certificate_signed(self, duration_seconds: float) -> None:
        """Record a signed certificate with duration."""
        certificates_signed_total.add(1)
        certificate_signing_duration.record(duration_seconds)

    def record_entity_generated(self, role: str) -> None:
        """Record entity written. Labels: role=root_ca|intermediate_ca|server|client"""
        entities_generated_total.add(1, {"role": role})

    def record_failure(self, stage: str) -> None:
        """Record failure. Labels: stage=key_generation|signing|parse|persistence|skipped"""
        failures_total.add(1, {"stage": stage})


# Singleton instance
pki_metrics = PKIMetrics()
