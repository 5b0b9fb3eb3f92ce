"""Temporal client factory.

Creates connections to Temporal (Cloud or a local dev server) using the
endpoint, namespace and credentials from ``core.config``.
"""

import os
import ssl
from typing import Optional

from temporalio.client import Client

from core.config import Settings, get_settings
from core.errors import ConfigurationError


async def get_temporal_client(settings: Optional[Settings] = None) -> Client:
    """Create and return a Temporal client.

    Reads configuration from settings:
    - TEMPORAL_ENDPOINT: Temporal endpoint (e.g., "temporal.example.com:7233")
    - TEMPORAL_NAMESPACE: Namespace (default "default")
    - TEMPORAL_API_KEY: Temporal Cloud API key; when unset the connection is
      plaintext, which is what a local dev server expects
    - TEMPORAL_CERT_PATH: Path to client certificate (optional, for mTLS)

    Returns:
        Connected Temporal client

    Raises:
        ConfigurationError: If TEMPORAL_ENDPOINT is missing
    """
    settings = settings or get_settings()

    if not settings.temporal_endpoint:
        raise ConfigurationError(
            "TEMPORAL_ENDPOINT environment variable not set. "
            "Set to your Temporal endpoint (e.g., 'localhost:7233')"
        )

    tls_config: Optional[ssl.SSLContext] = None
    if settings.temporal_api_key:
        tls_config = ssl.create_default_context()
        cert_path = os.getenv("TEMPORAL_CERT_PATH")
        if cert_path:
            tls_config.load_cert_chain(cert_path)

    return await Client.connect(
        target_host=settings.temporal_endpoint,
        namespace=settings.temporal_namespace,
        tls=tls_config or False,
        api_key=settings.temporal_api_key,
    )
