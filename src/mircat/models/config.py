"""
Configuration records for the relay.

The three records keep the key names of the JSON config file the desktop
shell reads and writes (``tcpAddr``, ``ServerIp`` ...), while Python code
uses snake_case attributes. Ports are stored in the file as strings and
parsed to ints here.

Records are frozen: a relay receives a validated ``Config`` once, and a rule
change means stopping the relay and starting a new one.
"""

import ipaddress
import json
import os
import re
from typing import Annotated

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
    ValidationError,
    field_validator,
)

from mircat.tunnel.errors import ConfigError
from mircat.utils.logger import get_logger

logger = get_logger(__name__)

CONFIG_FILE_NAME = "config.json"


_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)([A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)"
    r"(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*\.?$"
)


# =============================================================================
# Custom Types
# =============================================================================


def _coerce_port(value):
    """Accept ints, numeric strings and empty values (unset)."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("port must be a number")
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        if not value.isdigit():
            raise ValueError(f"port must be a number, got {value!r}")
        value = int(value)
    if not isinstance(value, int):
        raise ValueError(f"port must be a number, got {value!r}")
    if not 1 <= value <= 65535:
        raise ValueError(f"port must be within 1-65535, got {value}")
    return value


# Port: optional int in 1..65535; serializes back to the string form the
# config file uses ("" when unset)
Port = Annotated[
    int | None,
    BeforeValidator(_coerce_port),
    PlainSerializer(lambda p: "" if p is None else str(p), return_type=str),
]


def _check_address(value: str) -> str:
    if not value:
        return value
    try:
        ipaddress.ip_address(value)
        return value
    except ValueError:
        pass
    if not _HOSTNAME_RE.match(value):
        raise ValueError(f"not an IP address or hostname: {value!r}")
    return value


def format_endpoint(host: str, port: int | None) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


# =============================================================================
# Records
# =============================================================================


class _Record(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=True,
    )


class ServerConfig(_Record):
    """Public bind endpoints of the server."""

    tcp_addr: str = Field(default="", alias="tcpAddr")
    tcp_port: Port = Field(default=None, alias="tcpPort")
    udp_addr: str = Field(default="", alias="udpAddr")
    udp_port: Port = Field(default=None, alias="udpPort")

    @field_validator("tcp_addr", "udp_addr")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return _check_address(v)

    @property
    def tcp_endpoint(self) -> tuple[str, int | None]:
        return self.tcp_addr, self.tcp_port

    @property
    def udp_endpoint(self) -> tuple[str, int | None]:
        return self.udp_addr, self.udp_port

    @property
    def udp_enabled(self) -> bool:
        return bool(self.udp_addr) and self.udp_port is not None


class TransferConfig(_Record):
    """One forwarding rule: public source endpoint to private destination."""

    src_addr: str = Field(default="", alias="srcAddr")
    src_port: Port = Field(default=None, alias="srcPort")
    dst_addr: str = Field(default="", alias="dstAddr")
    dst_port: Port = Field(default=None, alias="dstPort")

    @field_validator("src_addr", "dst_addr")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return _check_address(v)

    @property
    def dst_endpoint(self) -> tuple[str, int | None]:
        return self.dst_addr, self.dst_port


class ClientConfig(_Record):
    """The server the client dials to establish its control channel."""

    server_ip: str = Field(default="", alias="ServerIp")
    server_port: Port = Field(default=None, alias="ServerPort")

    @field_validator("server_ip")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return _check_address(v)

    @property
    def server_endpoint(self) -> tuple[str, int | None]:
        return self.server_ip, self.server_port


class Config(_Record):
    """Aggregate of the three records, as stored in the config file."""

    server: ServerConfig = Field(default_factory=ServerConfig, alias="Server")
    transfer: TransferConfig = Field(default_factory=TransferConfig, alias="Transfer")
    client: ClientConfig = Field(default_factory=ClientConfig, alias="Client")

    def public_tcp_endpoint(self) -> tuple[str, int | None]:
        """
        Extra public TCP endpoint from the transfer rule.

        Empty srcAddr / srcPort fall back to the server TCP endpoint. The
        caller compares the result with ``server.tcp_endpoint`` to decide
        whether a second listener is needed.
        """
        addr = self.transfer.src_addr or self.server.tcp_addr
        port = self.transfer.src_port or self.server.tcp_port
        return addr, port

    def validate_for_server(self) -> "Config":
        """
        Check the fields the server role needs.

        Raises:
            ConfigError: Listing every missing or inconsistent field.
        """
        problems: list[tuple[str, str]] = []
        if not self.server.tcp_addr:
            problems.append(("Server.tcpAddr", "address is required"))
        if self.server.tcp_port is None:
            problems.append(("Server.tcpPort", "port is required"))
        if bool(self.server.udp_addr) != (self.server.udp_port is not None):
            problems.append(
                ("Server.udpAddr", "udpAddr and udpPort must be set together")
            )
        if self.transfer.src_addr and self.transfer.src_port is None:
            problems.append(("Transfer.srcPort", "port is required when srcAddr is set"))
        _raise_if_problems("server", problems)
        return self

    def validate_for_client(self) -> "Config":
        """
        Check the fields the client role needs.

        Raises:
            ConfigError: Listing every missing field.
        """
        problems: list[tuple[str, str]] = []
        if not self.client.server_ip:
            problems.append(("Client.ServerIp", "address is required"))
        if self.client.server_port is None:
            problems.append(("Client.ServerPort", "port is required"))
        if not self.transfer.dst_addr:
            problems.append(("Transfer.dstAddr", "address is required"))
        if self.transfer.dst_port is None:
            problems.append(("Transfer.dstPort", "port is required"))
        _raise_if_problems("client", problems)
        return self

    def to_file_dict(self) -> dict:
        return self.model_dump(by_alias=True)


def _raise_if_problems(role: str, problems: list[tuple[str, str]]) -> None:
    if not problems:
        return
    detail = "; ".join(f"{name}: {why}" for name, why in problems)
    raise ConfigError(
        f"Invalid {role} configuration: {detail}",
        fields=[name for name, _ in problems],
    )


# =============================================================================
# Parsing and Persistence
# =============================================================================


def parse_config(data: dict) -> Config:
    """
    Build a Config from a dict in config-file form.

    Raises:
        ConfigError: Malformed address/port values, unknown keys.
    """
    try:
        return Config.model_validate(data)
    except ValidationError as e:
        fields = []
        details = []
        for err in e.errors():
            name = ".".join(str(part) for part in err["loc"])
            fields.append(name)
            details.append(f"{name}: {err['msg']}")
        raise ConfigError(
            "Invalid configuration: " + "; ".join(details), fields=fields
        ) from e


def default_config_path() -> str:
    return os.path.join(os.getcwd(), CONFIG_FILE_NAME)


def load_config(path: str | None = None, create: bool = False) -> Config:
    """
    Load the config file.

    A missing or empty file yields an empty draft config. With ``create``,
    the draft is written so the user has a file to edit.

    Raises:
        ConfigError: The file exists but is not valid JSON or holds bad values.
    """
    path = path or default_config_path()
    content = ""
    if os.path.isfile(path):
        with open(path, encoding="utf-8") as f:
            content = f.read()

    if not content.strip():
        config = Config()
        if create:
            save_config(config, path)
            logger.info(f"Created empty config file at {path}")
        return config

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must hold a JSON object")
    return parse_config(data)


def save_config(config: Config, path: str | None = None) -> str:
    """Write the config in file form. Returns the path written."""
    path = path or default_config_path()
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(config.to_file_dict(), f, indent=2)
    logger.debug(f"Saved config to {path}")
    return path
