"""Background workers for async processing."""
from .outbox_publisher import start_outbox_publisher
from .provisioning_sweep import start_provisioning_sweep
from .status_poller import start_status_poller

__all__ = ["start_outbox_publisher", "start_provisioning_sweep", "start_status_poller"]
