"""
Capability catalogs: per-worker discovery and the merged global view.
"""

from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import FleetError, HandshakeError

if TYPE_CHECKING:
    from .supervisor import WorkerConnection


LIST_OPERATIONS = "tools/list"
LIST_RESOURCES = "resources/list"


class Operation(BaseModel):
    """A named operation a worker can run. Unknown wire fields are kept."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str = Field(min_length=1)
    description: str = ""
    input_schema: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        alias="inputSchema",
    )
    worker: Optional[str] = None

    @field_validator("input_schema")
    @classmethod
    def check_schema(cls, schema: Dict[str, Any]) -> Dict[str, Any]:
        properties = schema.get("properties")
        if properties is not None and not isinstance(properties, dict):
            raise ValueError("'properties' must be an object")
        required = schema.get("required")
        if required is not None and (
            not isinstance(required, list)
            or not all(isinstance(item, str) for item in required)
        ):
            raise ValueError("'required' must be a list of strings")
        return schema

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Resource(BaseModel):
    """A named readable resource a worker exposes. Unknown wire fields are kept."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    uri: str = Field(min_length=1)
    name: str = ""
    description: str = ""
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    worker: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def _extract_list(result: Any, key: str) -> List[Any]:
    if not isinstance(result, dict) or not isinstance(result.get(key), list):
        raise ValueError(f"response has no '{key}' list")
    return result[key]


class CapabilityAggregator:
    """
    Runs the post-spawn handshake and keeps the merged catalog.

    The global catalog is rebuilt from scratch whenever a worker connects or
    reconnects: every connected worker's entries, stamped with its name, in
    registration order.
    """

    def __init__(self):
        self._operations: List[Operation] = []
        self._resources: List[Resource] = []

    async def discover(self, connection: "WorkerConnection") -> None:
        """Fetch and validate a worker's operations and resources."""
        name = connection.name
        try:
            tools_result = await connection.request(
                LIST_OPERATIONS, require_connected=False
            )
            operations = [
                Operation.model_validate(item)
                for item in _extract_list(tools_result, "tools")
            ]

            resources_result = await connection.request(
                LIST_RESOURCES, require_connected=False
            )
            resources = [
                Resource.model_validate(item)
                for item in _extract_list(resources_result, "resources")
            ]
        except (FleetError, ValidationError, ValueError) as e:
            raise HandshakeError(f"Failed to initialize worker {name}: {e}") from e

        connection.operations = operations
        connection.resources = resources

    def rebuild(self, connections: Iterable["WorkerConnection"]) -> None:
        """Replace the global catalog with the connected workers' entries."""
        operations: List[Operation] = []
        resources: List[Resource] = []
        for connection in connections:
            if not connection.connected:
                continue
            operations.extend(
                op.model_copy(update={"worker": connection.name})
                for op in connection.operations
            )
            resources.extend(
                res.model_copy(update={"worker": connection.name})
                for res in connection.resources
            )
        self._operations = operations
        self._resources = resources

    def clear(self) -> None:
        self._operations = []
        self._resources = []

    @property
    def operations(self) -> List[Operation]:
        return list(self._operations)

    @property
    def resources(self) -> List[Resource]:
        return list(self._resources)

    def find_operation_worker(self, name: str) -> Optional[str]:
        """Name of the first worker (registration order) offering the operation."""
        for op in self._operations:
            if op.name == name:
                return op.worker
        return None

    def find_resource_worker(self, uri: str) -> Optional[str]:
        """Name of the first worker (registration order) exposing the resource."""
        for res in self._resources:
            if res.uri == uri:
                return res.worker
        return None
