"""
scenario.py - Scenario Parser

Parses orchestration scenarios from JSON or YAML files.

Design philosophy:
- Keep it simple: explicit field names, no schema framework
- Fail fast: raise ScenarioDefinitionError with the offending path
- Immutable once loaded (frozen dataclasses, tuples)

Example (JSON):
    {
      "name": "two_player_world",
      "description": "Alice creates a world, Bob joins it",
      "infrastructure": {
        "mqtt_server": {"required": true, "port": 1883},
        "mqtt_observer": {"required": false}
      },
      "clients": [
        {"id": "alice", "player_id": "alice", "mcp_port": 3001, "type": "desktop"}
      ],
      "steps": [
        {
          "name": "create",
          "description": "Create a world",
          "client": "alice",
          "action": {"type": "mcp_call", "tool": "create_world",
                     "arguments": {"world_name": "demo"}},
          "response_variables": {"world_id": "world_id"}
        }
      ]
    }
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from orch.config.settings import ORCHESTRATOR_CLIENT
from orch.errors import ScenarioDefinitionError


# --- Actions -----------------------------------------------------------------
# A closed, flat set of variants. The engine keeps one handler per class.

@dataclass(frozen=True)
class RemoteCall:
    tool: str
    arguments: Any = None


@dataclass(frozen=True)
class WaitForCondition:
    condition: str
    expected_value: Optional[str] = None
    timeout_ms: int = 0


@dataclass(frozen=True)
class RunLocalCommand:
    argv: Tuple[str, ...]
    cwd: Optional[str] = None
    background: bool = False
    timeout_ms: int = 0


@dataclass(frozen=True)
class Delay:
    duration_ms: int


@dataclass(frozen=True)
class Validate:
    checks: Tuple[str, ...]


@dataclass(frozen=True)
class PublishMessage:
    topic: str
    payload: Any = ""
    qos: int = 0
    retain: bool = False


@dataclass(frozen=True)
class ExpectMessage:
    topic: str
    payload: Optional[Any] = None
    timeout_ms: int = 5000


@dataclass(frozen=True)
class OpenUrl:
    url: str
    browser: Optional[str] = None
    wait_seconds: float = 0.0


@dataclass(frozen=True)
class ShowMessage:
    message: str
    message_type: str = "info"


@dataclass(frozen=True)
class Parallel:
    actions: Tuple["Action", ...]


@dataclass(frozen=True)
class Sequence:
    actions: Tuple["Action", ...]


Action = Union[
    RemoteCall,
    WaitForCondition,
    RunLocalCommand,
    Delay,
    Validate,
    PublishMessage,
    ExpectMessage,
    OpenUrl,
    ShowMessage,
    Parallel,
    Sequence,
]

ACTION_TYPES = (
    RemoteCall,
    WaitForCondition,
    RunLocalCommand,
    Delay,
    Validate,
    PublishMessage,
    ExpectMessage,
    OpenUrl,
    ShowMessage,
    Parallel,
    Sequence,
)

MESSAGE_TYPES = ("info", "success", "warning", "error")


# --- Participants ------------------------------------------------------------

@dataclass(frozen=True)
class BrokerSpec:
    """MQTT broker process."""
    required: bool = False
    port: int = 1883
    command: Optional[Tuple[str, ...]] = None
    cwd: Optional[str] = None


@dataclass(frozen=True)
class ObserverSpec:
    """Broker observer process (subscribes and prints traffic)."""
    required: bool = False
    topics: Tuple[str, ...] = ("#",)
    client_id: str = "orch_observer"
    command: Optional[Tuple[str, ...]] = None
    cwd: Optional[str] = None


@dataclass(frozen=True)
class InfrastructureSpec:
    broker: BrokerSpec = field(default_factory=BrokerSpec)
    observer: Optional[ObserverSpec] = None


@dataclass(frozen=True)
class LivenessProbeSpec:
    interval_seconds: float
    timeout_seconds: float = 3.0
    failure_threshold: int = 2


@dataclass(frozen=True)
class ClientSpec:
    """
    One instrumented client.

    Attributes:
        id: Unique id, also the log source name
        player_id: Identity inside the application
        mcp_port: Control-channel port (injected as MCP_PORT)
        client_type: "desktop" (spawned) or "external" (already running)
        name: Display name
        config: Free-form client config
        command: Launch command override
        cwd: Working directory override
    """
    id: str
    player_id: str = ""
    mcp_port: int = 0
    client_type: str = "desktop"
    name: Optional[str] = None
    config: Mapping[str, Any] = field(default_factory=dict)
    command: Optional[Tuple[str, ...]] = None
    cwd: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def is_external(self) -> bool:
        return self.client_type == "external"

    def liveness_probe(self, interval_s: float = 10.0, timeout_s: float = 3.0,
                       failure_threshold: int = 2) -> Optional[LivenessProbeSpec]:
        """
        The client's liveness probe, or None if config has no liveness_probe.

        Fields missing from the client config take the given defaults
        (normally the RunConfig probe_* settings).
        """
        probe = self.config.get("liveness_probe") if self.config else None
        if not isinstance(probe, dict):
            return None
        return LivenessProbeSpec(
            interval_seconds=float(probe.get("interval_seconds", interval_s)),
            timeout_seconds=float(probe.get("timeout_seconds", timeout_s)),
            failure_threshold=int(probe.get("failure_threshold", failure_threshold)),
        )


@dataclass(frozen=True)
class Step:
    name: str
    description: str
    client: str
    action: Action
    depends_on: Tuple[str, ...] = ()
    wait_before: int = 0
    wait_after: int = 0
    timeout: int = 0
    response_variables: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_local(self) -> bool:
        return self.client == ORCHESTRATOR_CLIENT


@dataclass(frozen=True)
class ScenarioConfig:
    timeout_ms: Optional[int] = None
    environment: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Scenario:
    """
    Orchestration scenario.

    Attributes:
        name: Scenario name
        description: Free text
        infrastructure: Broker / observer requirements
        clients: Ordered client list
        steps: Ordered step list
        version: Optional version string
        config: Global settings (deadline, child environment)
    """
    name: str
    description: str
    infrastructure: InfrastructureSpec
    clients: Tuple[ClientSpec, ...]
    steps: Tuple[Step, ...]
    version: str = ""
    config: ScenarioConfig = field(default_factory=ScenarioConfig)

    def client(self, client_id: str) -> Optional[ClientSpec]:
        for c in self.clients:
            if c.id == client_id:
                return c
        return None

    @property
    def is_indefinite(self) -> bool:
        """True when some step waits for a manual exit."""
        return any(_contains_manual_exit(step.action) for step in self.steps)

    def with_broker_port(self, port: int) -> "Scenario":
        broker = self.infrastructure.broker
        infra = InfrastructureSpec(
            broker=BrokerSpec(required=broker.required, port=port,
                              command=broker.command, cwd=broker.cwd),
            observer=self.infrastructure.observer,
        )
        return Scenario(
            name=self.name,
            description=self.description,
            infrastructure=infra,
            clients=self.clients,
            steps=self.steps,
            version=self.version,
            config=self.config,
        )


def _contains_manual_exit(action: Action) -> bool:
    if isinstance(action, WaitForCondition):
        return action.condition == "manual_exit"
    if isinstance(action, (Parallel, Sequence)):
        return any(_contains_manual_exit(a) for a in action.actions)
    return False


# --- Parsing -----------------------------------------------------------------

def _require(data: Dict[str, Any], key: str, where: str) -> Any:
    if key not in data:
        raise ScenarioDefinitionError(f"{where}: Missing required field '{key}'")
    return data[key]


def _as_dict(value: Any, where: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ScenarioDefinitionError(f"{where} must be a dict, got {type(value).__name__}")
    return value


def _as_list(value: Any, where: str) -> List[Any]:
    if not isinstance(value, list):
        raise ScenarioDefinitionError(f"{where} must be a list, got {type(value).__name__}")
    return value


def _as_int(value: Any, where: str) -> int:
    try:
        result = int(value)
    except (TypeError, ValueError):
        raise ScenarioDefinitionError(f"{where} must be an integer, got {value!r}")
    if result < 0:
        raise ScenarioDefinitionError(f"{where} must be non-negative, got {result}")
    return result


def _as_command(value: Any, where: str) -> Tuple[str, ...]:
    if isinstance(value, str):
        argv = tuple(value.split())
    elif isinstance(value, list) and all(isinstance(v, (str, int, float)) for v in value):
        argv = tuple(str(v) for v in value)
    else:
        raise ScenarioDefinitionError(f"{where} must be a string or a list of strings")
    if not argv:
        raise ScenarioDefinitionError(f"{where} must not be empty")
    return argv


def parse_action(data: Any, where: str = "action") -> Action:
    """Parse one action dict (tagged by 'type') into its variant."""
    data = _as_dict(data, where)
    kind = _require(data, "type", where)

    if kind == "mcp_call":
        return RemoteCall(
            tool=str(_require(data, "tool", where)),
            arguments=data.get("arguments", {}),
        )

    if kind == "wait_condition":
        expected = data.get("expected_value")
        return WaitForCondition(
            condition=str(_require(data, "condition", where)),
            expected_value=None if expected is None else str(expected),
            timeout_ms=_as_int(data.get("timeout", 0), f"{where}.timeout"),
        )

    if kind in ("run_command", "console_command"):
        return RunLocalCommand(
            argv=_as_command(_require(data, "command", where), f"{where}.command"),
            cwd=data.get("cwd"),
            background=bool(data.get("background", False)),
            timeout_ms=_as_int(data.get("timeout", 0), f"{where}.timeout"),
        )

    if kind == "delay":
        return Delay(duration_ms=_as_int(_require(data, "duration", where), f"{where}.duration"))

    if kind == "wait":
        return Delay(
            duration_ms=_as_int(_require(data, "duration_ms", where), f"{where}.duration_ms")
        )

    if kind == "validate_scenario":
        checks = _as_list(_require(data, "checks", where), f"{where}.checks")
        return Validate(checks=tuple(str(c) for c in checks))

    if kind == "mqtt_publish":
        qos = _as_int(data.get("qos") or 0, f"{where}.qos")
        if qos > 2:
            raise ScenarioDefinitionError(f"{where}.qos must be 0, 1 or 2, got {qos}")
        return PublishMessage(
            topic=str(_require(data, "topic", where)),
            payload=data.get("payload", ""),
            qos=qos,
            retain=bool(data.get("retain") or False),
        )

    if kind == "mqtt_expect":
        timeout_ms = data.get("timeout_ms")
        return ExpectMessage(
            topic=str(_require(data, "topic", where)),
            payload=data.get("payload"),
            timeout_ms=5000 if timeout_ms is None else _as_int(timeout_ms, f"{where}.timeout_ms"),
        )

    if kind == "open_browser":
        return OpenUrl(
            url=str(_require(data, "url", where)),
            browser=data.get("browser"),
            wait_seconds=float(data.get("wait_seconds", 0) or 0),
        )

    if kind == "show_message":
        message_type = str(data.get("message_type", "info"))
        if message_type not in MESSAGE_TYPES:
            raise ScenarioDefinitionError(
                f"{where}.message_type must be one of {', '.join(MESSAGE_TYPES)}, "
                f"got '{message_type}'"
            )
        return ShowMessage(message=str(_require(data, "message", where)),
                           message_type=message_type)

    if kind in ("parallel", "sequence"):
        nested = _as_list(_require(data, "actions", where), f"{where}.actions")
        if not nested:
            raise ScenarioDefinitionError(f"{where}.actions must not be empty")
        actions = tuple(
            parse_action(a, f"{where}.actions[{i}]") for i, a in enumerate(nested)
        )
        return Parallel(actions=actions) if kind == "parallel" else Sequence(actions=actions)

    raise ScenarioDefinitionError(f"{where}: Unknown action type '{kind}'")


def _parse_infrastructure(data: Any) -> InfrastructureSpec:
    if data is None:
        return InfrastructureSpec()
    data = _as_dict(data, "infrastructure")

    broker = BrokerSpec()
    broker_data = data.get("broker", data.get("mqtt_server"))
    if broker_data is not None:
        broker_data = _as_dict(broker_data, "infrastructure.broker")
        required = broker_data.get("required", broker_data.get("enabled", False))
        command = broker_data.get("command")
        broker = BrokerSpec(
            required=bool(required),
            port=_as_int(broker_data.get("port", 1883), "infrastructure.broker.port"),
            command=None if command is None else _as_command(
                command, "infrastructure.broker.command"),
            cwd=broker_data.get("cwd"),
        )

    observer = None
    observer_data = data.get("observer", data.get("mqtt_observer"))
    if observer_data is not None:
        observer_data = _as_dict(observer_data, "infrastructure.observer")
        topics = observer_data.get("topics") or ["#"]
        command = observer_data.get("command")
        observer = ObserverSpec(
            required=bool(observer_data.get("required", False)),
            topics=tuple(str(t) for t in _as_list(topics, "infrastructure.observer.topics")),
            client_id=str(observer_data.get("client_id") or "orch_observer"),
            command=None if command is None else _as_command(
                command, "infrastructure.observer.command"),
            cwd=observer_data.get("cwd"),
        )

    if observer and observer.required and not broker.required:
        raise ScenarioDefinitionError("infrastructure.observer requires a broker")

    return InfrastructureSpec(broker=broker, observer=observer)


def _parse_client(data: Any, i: int) -> ClientSpec:
    where = f"Client {i}"
    data = _as_dict(data, where)
    client_id = str(_require(data, "id", where))
    where = f"Client {i} (id={client_id})"

    if client_id == ORCHESTRATOR_CLIENT:
        raise ScenarioDefinitionError(f"{where}: '{ORCHESTRATOR_CLIENT}' is a reserved id")

    config = data.get("config") or {}
    command = data.get("command")
    return ClientSpec(
        id=client_id,
        player_id=str(data.get("player_id", "")),
        mcp_port=_as_int(_require(data, "mcp_port", where), f"{where}.mcp_port"),
        client_type=str(data.get("client_type", data.get("type", "desktop")) or "desktop"),
        name=data.get("name"),
        config=_as_dict(config, f"{where}.config"),
        command=None if command is None else _as_command(command, f"{where}.command"),
        cwd=data.get("cwd"),
    )


def _parse_step(data: Any, i: int) -> Step:
    where = f"Step {i}"
    data = _as_dict(data, where)
    name = str(_require(data, "name", where))
    where = f"Step {i} ({name})"

    depends_on = _as_list(data.get("depends_on") or [], f"{where}.depends_on")
    response_variables = _as_dict(data.get("response_variables") or {},
                                  f"{where}.response_variables")

    return Step(
        name=name,
        description=str(data.get("description", "")),
        client=str(data.get("client") or ORCHESTRATOR_CLIENT),
        action=parse_action(_require(data, "action", where), f"{where}.action"),
        depends_on=tuple(str(d) for d in depends_on),
        wait_before=_as_int(data.get("wait_before", 0), f"{where}.wait_before"),
        wait_after=_as_int(data.get("wait_after", 0), f"{where}.wait_after"),
        timeout=_as_int(data.get("timeout", 0), f"{where}.timeout"),
        response_variables={str(k): str(v) for k, v in response_variables.items()},
    )


def parse_scenario(data: Any) -> Scenario:
    """
    Build a Scenario from already-decoded JSON/YAML data.

    Raises:
        ScenarioDefinitionError: If required fields are missing or invalid
    """
    data = _as_dict(data, "Scenario file")

    clients = tuple(
        _parse_client(c, i) for i, c in enumerate(_as_list(data.get("clients") or [], "clients"))
    )
    steps = tuple(
        _parse_step(s, i) for i, s in enumerate(_as_list(_require(data, "steps", "Scenario"),
                                                         "steps"))
    )

    config_data = _as_dict(data.get("config") or {}, "config")
    timeout_ms = config_data.get("timeout_ms")
    environment = _as_dict(config_data.get("environment") or {}, "config.environment")
    config = ScenarioConfig(
        timeout_ms=None if timeout_ms is None else _as_int(timeout_ms, "config.timeout_ms"),
        environment={str(k): str(v) for k, v in environment.items()},
    )

    scenario = Scenario(
        name=str(_require(data, "name", "Scenario")),
        description=str(data.get("description", "")),
        infrastructure=_parse_infrastructure(data.get("infrastructure")),
        clients=clients,
        steps=steps,
        version=str(data.get("version", "")),
        config=config,
    )
    validate_scenario(scenario)
    return scenario


def validate_scenario(scenario: Scenario) -> None:
    """
    Cross-reference checks on a parsed scenario.

    Orchestrator-only scenarios (no clients) are allowed.

    Raises:
        ScenarioDefinitionError: On the first problem found
    """
    if not scenario.steps:
        raise ScenarioDefinitionError("Scenario must have at least one step")

    client_ids = set()
    ports = {}
    for client in scenario.clients:
        if client.id in client_ids:
            raise ScenarioDefinitionError(f"Duplicate client id '{client.id}'")
        client_ids.add(client.id)

        if client.mcp_port <= 0 or client.mcp_port > 65535:
            raise ScenarioDefinitionError(
                f"Client '{client.id}': mcp_port must be in 1..65535, got {client.mcp_port}"
            )
        if client.mcp_port in ports:
            raise ScenarioDefinitionError(
                f"Clients '{ports[client.mcp_port]}' and '{client.id}' share "
                f"mcp_port {client.mcp_port}"
            )
        ports[client.mcp_port] = client.id

    broker = scenario.infrastructure.broker
    if broker.required and broker.port in ports:
        raise ScenarioDefinitionError(
            f"Broker port {broker.port} collides with client '{ports[broker.port]}'"
        )

    step_names = set()
    for step in scenario.steps:
        if step.name in step_names:
            raise ScenarioDefinitionError(f"Duplicate step name '{step.name}'")
        step_names.add(step.name)

        if not step.is_local and step.client not in client_ids:
            raise ScenarioDefinitionError(
                f"Step '{step.name}' references unknown client '{step.client}'"
            )
        if step.is_local and _needs_client(step.action):
            raise ScenarioDefinitionError(
                f"Step '{step.name}': mcp_call needs a client, not '{ORCHESTRATOR_CLIENT}'"
            )
        if _needs_broker(step.action) and not broker.required:
            raise ScenarioDefinitionError(
                f"Step '{step.name}' uses the broker but infrastructure.broker is not required"
            )

    for step in scenario.steps:
        for dep in step.depends_on:
            if dep not in step_names:
                raise ScenarioDefinitionError(
                    f"Step '{step.name}' depends on unknown step '{dep}'"
                )
            if dep == step.name:
                raise ScenarioDefinitionError(f"Step '{step.name}' depends on itself")


def _needs_client(action: Action) -> bool:
    if isinstance(action, RemoteCall):
        return True
    if isinstance(action, (Parallel, Sequence)):
        return any(_needs_client(a) for a in action.actions)
    return False


def _needs_broker(action: Action) -> bool:
    if isinstance(action, (PublishMessage, ExpectMessage)):
        return True
    if isinstance(action, (Parallel, Sequence)):
        return any(_needs_broker(a) for a in action.actions)
    return False


def load_scenario(path: Union[str, Path]) -> Scenario:
    """
    Load scenario from a JSON or YAML file.

    Args:
        path: Path to .json, .yaml or .yml file

    Returns:
        Scenario object with parsed configuration

    Raises:
        FileNotFoundError: If the file doesn't exist
        ScenarioDefinitionError: If the content is malformed or invalid
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Scenario file not found: {path}")

    with open(path, 'r', encoding='utf-8') as f:
        content = f.read()

    try:
        if path.suffix.lower() == ".json":
            data = json.loads(content)
        else:
            data = yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ScenarioDefinitionError(f"Invalid syntax in {path}: {e}")

    return parse_scenario(data)
