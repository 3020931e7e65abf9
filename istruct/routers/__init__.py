"""HTTP routers, one module per API prefix."""

from istruct.routers import compute_devices, devadm, machines, network, storage
from istruct.routing import CompositeRouter


def build_router() -> CompositeRouter:
    """Every versioned router the agent serves."""
    return CompositeRouter(
        machines.versioned
        + compute_devices.versioned
        + devadm.versioned
        + storage.versioned
        + network.versioned
    )
