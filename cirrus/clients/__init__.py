"""Remote collaborators.

NOTE: Only the protocols are imported at package level to avoid deps.
For the Google-backed implementations, import explicitly:

    from cirrus.clients.gce import GCEClient
    from cirrus.clients.gcs import GCSStorage
"""

from __future__ import annotations

from .protocols import ComputeClient, SerialPortOutput, StorageClient

__all__ = [
    "ComputeClient",
    "SerialPortOutput",
    "StorageClient",
]
