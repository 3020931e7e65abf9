"""libvirt adapter used by the engine.

Wraps one libvirt connection: domain lookup, domain XML read-modify-write,
run-state mapping, lifecycle actions, and the shared NAT network. Nothing in
here is thread-safe; the engine worker is the only caller.
"""

from __future__ import annotations

import logging
from typing import Callable
from uuid import UUID

from istruct.devices import MachineAction, MachineId, MachineState
from istruct.domain_xml import NAT_NETWORK_NAME, DomainDescriptor, build_nat_network_xml
from istruct.errors import BackendFailure, InvalidConfiguration, InvariantViolation, NotFound

logger = logging.getLogger(__name__)


# Try to import libvirt - it's optional so the rest of the package imports
# on hosts without the bindings.
try:
    import libvirt
    LIBVIRT_AVAILABLE = True
except ImportError:
    libvirt = None
    LIBVIRT_AVAILABLE = False


# libvirt error codes that mean "your XML was rejected" rather than
# "the hypervisor failed".
_XML_REJECTION_CODES = (
    "VIR_ERR_XML_ERROR",
    "VIR_ERR_XML_DETAIL",
    "VIR_ERR_XML_INVALID_SCHEMA",
    "VIR_ERR_CONFIG_UNSUPPORTED",
)


def _error_code(e: Exception) -> int | None:
    get_code = getattr(e, "get_error_code", None)
    return get_code() if get_code else None


def map_domain_state(state: int) -> MachineState:
    """Map a libvirt virDomainState value to MachineState.

    SHUTDOWN (guest is shutting down) still counts as running, and BLOCKED
    is reported as an error; both are approximations.

    Raises:
        InvariantViolation: for a state value this table does not cover,
            which means the libvirt bindings are newer than this code.
    """
    state_map = {
        libvirt.VIR_DOMAIN_NOSTATE: MachineState.OFF,
        libvirt.VIR_DOMAIN_RUNNING: MachineState.RUNNING,
        libvirt.VIR_DOMAIN_BLOCKED: MachineState.ERROR,
        libvirt.VIR_DOMAIN_PAUSED: MachineState.SUSPENDED,
        libvirt.VIR_DOMAIN_SHUTDOWN: MachineState.RUNNING,
        libvirt.VIR_DOMAIN_SHUTOFF: MachineState.OFF,
        libvirt.VIR_DOMAIN_CRASHED: MachineState.ERROR,
        libvirt.VIR_DOMAIN_PMSUSPENDED: MachineState.SUSPENDED,
    }
    if state not in state_map:
        logger.critical(f"Unknown libvirt domain state {state}")
        raise InvariantViolation(f"unknown libvirt domain state {state}")
    return state_map[state]


class Hypervisor:
    """Single libvirt connection plus the operations the engine needs."""

    def __init__(self, uri: str):
        self._uri = uri
        self._conn = None

    @property
    def uri(self) -> str:
        return self._uri

    @property
    def conn(self):
        """Lazy-initialize libvirt connection."""
        if libvirt is None:
            raise BackendFailure("libvirt-python package is not installed")
        if self._conn is None or not self._conn.isAlive():
            try:
                self._conn = libvirt.open(self._uri)
            except libvirt.libvirtError as e:
                raise BackendFailure(f"Failed to connect to libvirt at {self._uri}: {e}") from e
            if self._conn is None:
                raise BackendFailure(f"Failed to connect to libvirt at {self._uri}")
            logger.info(f"Connected to libvirt at {self._uri}")
        return self._conn

    def close(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.close()
        except Exception as e:
            logger.warning(f"Error closing libvirt connection: {e}")
        self._conn = None

    # --- Domains ---

    def lookup_domain(self, machine: MachineId):
        """Return the libvirt domain for machine, or None if it has none."""
        conn = self.conn
        try:
            return conn.lookupByUUIDString(str(machine))
        except libvirt.libvirtError as e:
            if _error_code(e) == libvirt.VIR_ERR_NO_DOMAIN:
                return None
            raise BackendFailure(f"Failed to look up domain {machine}: {e}") from e

    def get_descriptor(self, machine: MachineId) -> DomainDescriptor | None:
        domain = self.lookup_domain(machine)
        if domain is None:
            return None
        try:
            xml = domain.XMLDesc(0)
        except libvirt.libvirtError as e:
            raise BackendFailure(f"Failed to read XML for domain {machine}: {e}") from e
        return DomainDescriptor.from_xml(xml)

    def define_domain(self, descriptor: DomainDescriptor) -> UUID:
        """Define or redefine a domain, asking libvirt to validate the XML.

        Raises:
            InvalidConfiguration: libvirt rejected the document.
            BackendFailure: any other libvirt error.
        """
        conn = self.conn
        try:
            domain = conn.defineXMLFlags(
                descriptor.to_xml(), libvirt.VIR_DOMAIN_DEFINE_VALIDATE,
            )
        except libvirt.libvirtError as e:
            rejection_codes = {getattr(libvirt, name, None) for name in _XML_REJECTION_CODES}
            if _error_code(e) in rejection_codes:
                raise InvalidConfiguration(f"libvirt rejected domain XML: {e}") from e
            raise BackendFailure(f"Failed to define domain: {e}") from e
        if domain is None:
            raise BackendFailure("libvirt returned no domain from defineXMLFlags")
        return UUID(domain.UUIDString())

    def edit_domain(
        self,
        machine: MachineId,
        mutate: Callable[[DomainDescriptor], None],
    ) -> DomainDescriptor:
        """Fetch the machine's live XML, apply mutate, and redefine it.

        Raises:
            NotFound: the machine has no libvirt domain.
            InvalidConfiguration: libvirt rejected the edited document.
        """
        descriptor = self.get_descriptor(machine)
        if descriptor is None:
            raise NotFound(f"cannot fetch domain for machine {machine}")
        mutate(descriptor)
        self.define_domain(descriptor)
        return descriptor

    def undefine_domain(self, machine: MachineId) -> bool:
        """Undefine the machine's domain. Returns False if it was already gone."""
        domain = self.lookup_domain(machine)
        if domain is None:
            return False
        try:
            domain.undefine()
        except libvirt.libvirtError as e:
            raise BackendFailure(f"Failed to undefine domain {machine}: {e}") from e
        logger.info(f"Undefined domain {machine}")
        return True

    def list_domain_ids(self) -> list[UUID]:
        conn = self.conn
        try:
            domains = conn.listAllDomains(0)
        except libvirt.libvirtError as e:
            raise BackendFailure(f"Failed to list domains: {e}") from e

        ids = []
        for domain in domains:
            try:
                ids.append(UUID(domain.UUIDString()))
            except (libvirt.libvirtError, ValueError) as e:
                logger.warning(f"Skipping domain with unreadable UUID: {e}")
        return ids

    def domain_state(self, machine: MachineId) -> MachineState | None:
        domain = self.lookup_domain(machine)
        if domain is None:
            return None
        try:
            state, _reason = domain.state()
        except libvirt.libvirtError as e:
            if _error_code(e) == libvirt.VIR_ERR_NO_DOMAIN:
                return None
            raise BackendFailure(f"Failed to read state of domain {machine}: {e}") from e
        return map_domain_state(state)

    def act(self, machine: MachineId, action: MachineAction) -> None:
        """Issue a lifecycle call. The current state is not checked first.

        Raises:
            NotFound: the machine has no libvirt domain.
            BackendFailure: libvirt refused or failed the transition.
        """
        domain = self.lookup_domain(machine)
        if domain is None:
            raise NotFound(f"machine {machine} has no domain")

        calls = {
            MachineAction.FORCE_SHUTDOWN: lambda: domain.destroyFlags(
                libvirt.VIR_DOMAIN_DESTROY_GRACEFUL
            ),
            MachineAction.FORCE_RESET: lambda: domain.reset(0),
            MachineAction.SHUTDOWN: domain.shutdown,
            MachineAction.SUSPEND: domain.suspend,
            MachineAction.RESUME: domain.resume,
            MachineAction.BOOT: domain.create,
        }
        try:
            calls[action]()
        except libvirt.libvirtError as e:
            raise BackendFailure(f"{action.value} failed for machine {machine}: {e}") from e
        logger.info(f"Issued {action.value} to machine {machine}")

    # --- Networks ---

    def ensure_nat_network(self) -> bool:
        """Make sure the shared NAT network exists, is active and autostarts.

        Returns True if the network had to be defined.
        """
        conn = self.conn
        defined = False
        try:
            network = conn.networkLookupByName(NAT_NETWORK_NAME)
        except libvirt.libvirtError as e:
            if _error_code(e) != libvirt.VIR_ERR_NO_NETWORK:
                raise BackendFailure(f"Failed to look up network {NAT_NETWORK_NAME}: {e}") from e
            network = None

        try:
            if network is None:
                network = conn.networkDefineXML(build_nat_network_xml())
                defined = True
                logger.info(f"Defined NAT network {NAT_NETWORK_NAME}")
            if network.isActive() != 1:
                network.create()
                logger.info(f"Started NAT network {NAT_NETWORK_NAME}")
        except libvirt.libvirtError as e:
            raise BackendFailure(f"Failed to set up network {NAT_NETWORK_NAME}: {e}") from e

        try:
            network.setAutostart(True)
        except libvirt.libvirtError as e:
            # Non-fatal while the network is active now.
            logger.warning(f"Could not enable autostart on {NAT_NETWORK_NAME}: {e}")
        return defined
