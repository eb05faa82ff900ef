""" Manifest schema: the serialized form of a workflow definition. """
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import ManifestError


class _ManifestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TriggerSpec(_ManifestModel):
    type: str
    module: Optional[str] = None
    entity_type: Optional[str] = Field(default=None, alias="entityType")
    event_type: Optional[str] = Field(default=None, alias="eventType")
    conditions: Optional[Dict[str, Any]] = None
    node_id: Optional[str] = Field(default=None, alias="nodeId")


class NodeSpec(_ManifestModel):
    node_id: str = Field(alias="nodeId")
    type: str
    name: Optional[str] = None
    execution_order: int = Field(default=0, alias="executionOrder")
    config: Optional[Dict[str, Any]] = None
    is_optional: bool = Field(default=False, alias="isOptional")
    retry_limit: Optional[int] = Field(default=None, alias="retryLimit", ge=0)


class ConnectionSpec(_ManifestModel):
    source_node_id: str = Field(alias="sourceNodeId")
    target_node_id: str = Field(alias="targetNodeId")
    execution_order: int = Field(default=0, alias="executionOrder")
    conditions: Optional[Dict[str, Any]] = None


class VariableSpec(_ManifestModel):
    name: str
    type: str = "string"
    description: Optional[str] = None
    default_value: Any = Field(default=None, alias="defaultValue")


class WorkflowManifest(_ManifestModel):
    id: str
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    version: int = 1

    triggers: List[TriggerSpec] = Field(default_factory=list)
    nodes: List[NodeSpec] = Field(default_factory=list)
    connections: List[ConnectionSpec] = Field(default_factory=list)
    variables: List[VariableSpec] = Field(default_factory=list)


def parse_manifest(raw: Union[str, bytes, Dict[str, Any]]) -> WorkflowManifest:
    """
    Validate a raw manifest (YAML/JSON text or an already-loaded mapping)
    against WorkflowManifest.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise ManifestError(f"Manifest is not valid YAML/JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ManifestError("Manifest must be a mapping at the top level")
    try:
        return WorkflowManifest.model_validate(raw)
    except ValidationError as e:
        raise ManifestError(f"Manifest validation error: {e}") from e


def dump_manifest(manifest: WorkflowManifest) -> Dict[str, Any]:
    return manifest.model_dump(by_alias=True, exclude_none=True)
