import os

# Keep the test process from installing a global tracer provider.
os.environ.setdefault("PS_OTEL_ENABLED", "false")
