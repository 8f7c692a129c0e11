from dataclasses import dataclass, field

@dataclass(frozen=True)
class WindowsKey:
    email: str = ""
    expire_on: str = ""   # RFC 3339, kept as sent
    exponent: str = ""
    modulus: str = ""
    user_name: str = ""
    hash_function: str = ""

@dataclass(frozen=True)
class Attributes:
    """
    Decoded attribute bag of an instance or project.

    The four flags are tri-state: None means the service sent nothing that
    parses as a boolean and the consumer should apply its own default.
    """
    disable_address_manager: bool | None = None
    disable_account_manager: bool | None = None
    enable_diagnostics: bool | None = None
    enable_wsfc: bool | None = None
    diagnostics: str = ""
    wsfc_addresses: str = ""
    wsfc_agent_port: str = ""
    windows_keys: tuple[WindowsKey, ...] = ()

@dataclass(frozen=True)
class NetworkInterface:
    mac: str = ""
    forwarded_ips: tuple[str, ...] = ()
    target_instance_ips: tuple[str, ...] = ()

@dataclass(frozen=True)
class InstanceSection:
    attributes: Attributes = field(default_factory=Attributes)
    network_interfaces: tuple[NetworkInterface, ...] = ()

@dataclass(frozen=True)
class ProjectSection:
    attributes: Attributes = field(default_factory=Attributes)
    project_id: str = ""

@dataclass(frozen=True)
class Snapshot:
    instance: InstanceSection = field(default_factory=InstanceSection)
    project: ProjectSection = field(default_factory=ProjectSection)
