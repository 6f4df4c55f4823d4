"""Pydantic v2 schema for workspace (flow) documents.

A workspace is what the visual editor produces: containers of ordered nodes
plus the edges between containers.  Every node type carries its own config
model; ``Node`` is a discriminated union on the ``type`` field so a document
with an unknown type, or a config of the wrong shape, fails to parse.

Field names are snake_case in Python and accept the editor's camelCase keys
through aliases.  Editor-only keys (layout hints, preview state) are ignored.
All models are frozen: once parsed, a workspace is read-only.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator


def _to_text(value: Any) -> Any:
    """Coerce scalar document values to their string form."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return value


Text = Annotated[str, BeforeValidator(_to_text)]


class _Model(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


# ── Enumerations ─────────────────────────────────────


class NodeKind(StrEnum):
    """The closed set of step kinds."""

    START = "start"
    WEBHOOK = "webhook"
    HTTP_REQUEST = "http-request"
    BUBBLE_TEXT = "bubble-text"
    BUBBLE_NUMBER = "bubble-number"
    BUBBLE_IMAGE = "bubble-image"
    BUBBLE_VIDEO = "bubble-video"
    BUBBLE_AUDIO = "bubble-audio"
    BUBBLE_DOCUMENT = "bubble-document"
    INPUT_TEXT = "input-text"
    INPUT_NUMBER = "input-number"
    INPUT_MAIL = "input-mail"
    INPUT_PHONE = "input-phone"
    INPUT_IMAGE = "input-image"
    INPUT_VIDEO = "input-video"
    INPUT_AUDIO = "input-audio"
    INPUT_DOCUMENT = "input-document"
    INPUT_BUTTONS = "input-buttons"
    INPUT_WEBSITE = "input-website"
    SET_VARIABLE = "set-variable"
    SCRIPT = "script"
    CONDITION = "condition"

    @property
    def is_bubble(self) -> bool:
        return self.value.startswith("bubble-")

    @property
    def is_input(self) -> bool:
        return self.value.startswith("input-")

    @property
    def is_io(self) -> bool:
        return self in (NodeKind.WEBHOOK, NodeKind.HTTP_REQUEST, NodeKind.SCRIPT)


class ComparisonOperator(StrEnum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IS_SET = "is_set"
    IS_EMPTY = "is_empty"
    MATCHES_REGEX = "matches_regex"
    NOT_MATCHES_REGEX = "not_matches_regex"


class LogicalOperator(StrEnum):
    AND = "AND"
    OR = "OR"


class SetValueType(StrEnum):
    """Where a ``set-variable`` node takes its value from."""

    CUSTOM = "custom"
    EMPTY = "empty"
    NOW = "now"
    TODAY = "today"
    YESTERDAY = "yesterday"
    TOMORROW = "tomorrow"
    RANDOM = "random"


class HttpAuthType(StrEnum):
    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"
    HEADER = "header"
    API_KEY = "apiKey"


class WebhookAuthType(StrEnum):
    NONE = "none"
    BASIC = "basic"
    HEADER = "header"


class BodyContentType(StrEnum):
    JSON = "json"
    FORM = "form"
    RAW = "raw"


class ResponseFormat(StrEnum):
    JSON = "json"
    TEXT = "text"


# ── Shared config pieces ─────────────────────────────


class KeyValue(_Model):
    """A name/value pair (header, query or form parameter)."""

    name: Text = ""
    value: Text = ""


def _pairs(value: Any) -> Any:
    """Accept ``{"k": "v"}`` mappings as well as ``[{name, value}]`` lists."""
    if isinstance(value, Mapping):
        return [{"name": k, "value": v} for k, v in value.items()]
    return value


KeyValues = Annotated[tuple[KeyValue, ...], BeforeValidator(_pairs)]


class AuthCredentials(_Model):
    username: Text = ""
    password: Text = ""
    token: Text = ""
    header_name: Text = Field(default="", alias="headerName")
    header_value: Text = Field(default="", alias="headerValue")
    api_key_name: Text = Field(default="", alias="apiKeyName")
    api_key_value: Text = Field(default="", alias="apiKeyValue")
    api_key_location: Literal["header", "query"] = Field(
        default="header", alias="apiKeyLocation"
    )


class InitialVariable(_Model):
    name: Text = ""
    default_value: Text = Field(default="", alias="defaultValue")


class ButtonOption(_Model):
    """One choice of an ``input-buttons`` node."""

    id: str = Field(min_length=1)
    label: Text = ""
    value: Text = ""
    description: Text = ""
    redirect_url: Text = Field(default="", alias="redirectUrl")
    save_variable: Text = Field(default="", alias="saveVariable")

    @property
    def stored_value(self) -> str:
        """Value written to variables when this button is selected."""
        return self.value or self.label


class ConditionComparison(_Model):
    variable_name: Text = Field(default="", alias="variableName")
    operator: ComparisonOperator = ComparisonOperator.EQUALS
    value: Text = ""


class ConditionGroup(_Model):
    """Comparisons joined by one logical operator; selects one branch."""

    id: str = Field(min_length=1)
    logical_operator: LogicalOperator = Field(
        default=LogicalOperator.AND, alias="logicalOperator"
    )
    comparisons: tuple[ConditionComparison, ...] = ()

    @field_validator("logical_operator", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


# ── Per-type configs ─────────────────────────────────


class StartConfig(_Model):
    flow_name: Text = Field(default="", alias="flowName")
    description: Text = ""
    initial_variables: tuple[InitialVariable, ...] = Field(
        default=(), alias="initialVariables"
    )


class BubbleTextConfig(_Model):
    message: Text = ""


class BubbleNumberConfig(_Model):
    number: Text = ""


class BubbleImageConfig(_Model):
    url: Text = Field(default="", alias="ImageURL")
    alt: Text = Field(default="", alias="ImageAlt")


class BubbleVideoConfig(_Model):
    url: Text = Field(default="", alias="VideoURL")
    alt: Text = Field(default="", alias="VideoAlt")


class BubbleAudioConfig(_Model):
    url: Text = Field(default="", alias="AudioURL")
    autoplay: bool = Field(default=False, alias="AudioAutoplay")


class BubbleDocumentConfig(_Model):
    url: Text = Field(default="", alias="FileURL")
    file_name: Text = Field(default="", alias="FileName")


class InputConfig(_Model):
    save_variable: Text = Field(default="", alias="saveVariable")
    placeholder: Text = Field(default="", alias="responseUserTextInput")
    button_label: Text = Field(default="", alias="buttonLabel")


class NumberInputConfig(InputConfig):
    placeholder: Text = Field(default="", alias="resPonseUserNumber")
    min: float | None = None
    max: float | None = None


class ButtonsInputConfig(_Model):
    buttons: tuple[ButtonOption, ...] = ()
    save_variable: Text = Field(default="", alias="saveVariable")
    is_multiple_choice: bool = Field(default=False, alias="isMultipleChoice")
    is_searchable: bool = Field(default=False, alias="isSearchable")
    submit_label: Text = Field(default="Enviar", alias="submitLabel")


class SetVariableConfig(_Model):
    variable_name: Text = Field(default="", alias="variableName")
    value_type: SetValueType = Field(default=SetValueType.CUSTOM, alias="valueType")
    value: Text = ""
    custom_value: Text = Field(default="", alias="customValue")

    @property
    def template(self) -> str:
        """Text interpolated for ``custom`` values."""
        return self.custom_value or self.value


class ConditionConfig(_Model):
    conditions: tuple[ConditionGroup, ...] = ()


class HttpRequestConfig(_Model):
    method: Text = "GET"
    url: Text = ""
    auth_type: HttpAuthType = Field(default=HttpAuthType.NONE, alias="authType")
    auth_credentials: AuthCredentials = Field(
        default_factory=AuthCredentials, alias="authCredentials"
    )
    query_params: KeyValues = Field(default=(), alias="queryParams")
    headers: KeyValues = ()
    send_body: bool = Field(default=False, alias="sendBody")
    body_content_type: BodyContentType = Field(
        default=BodyContentType.JSON, alias="bodyContentType"
    )
    body_params: KeyValues = Field(default=(), alias="bodyParams")
    body_json: Text = Field(default="{}", alias="bodyJson")
    body_raw: Text = Field(default="", alias="bodyRaw")
    timeout_ms: int = Field(default=30000, gt=0, alias="timeout")
    follow_redirects: bool = Field(default=True, alias="followRedirects")
    ignore_ssl: bool = Field(default=False, alias="ignoreSSL")
    response_variable: Text = Field(default="httpResponse", alias="responseVariable")
    response_format: ResponseFormat = Field(
        default=ResponseFormat.JSON, alias="responseFormat"
    )


class WebhookConfig(_Model):
    method: Text = "POST"
    path: Text = ""
    authentication: WebhookAuthType = WebhookAuthType.NONE
    auth_credentials: AuthCredentials = Field(
        default_factory=AuthCredentials, alias="authCredentials"
    )
    response_variable: Text = Field(default="webhookData", alias="responseVariable")


class ScriptConfig(_Model):
    code: Text = ""
    execute_on_server: bool = Field(default=False, alias="executeOnServer")
    response_variable: Text = Field(default="", alias="responseVariable")


# ── Nodes (tagged variants) ──────────────────────────


class _NodeBase(_Model):
    id: str = Field(min_length=1)

    @property
    def kind(self) -> NodeKind:
        return NodeKind(getattr(self, "type"))


class StartNode(_NodeBase):
    type: Literal["start"]
    config: StartConfig = Field(default_factory=StartConfig)


class WebhookNode(_NodeBase):
    type: Literal["webhook"]
    config: WebhookConfig = Field(default_factory=WebhookConfig)


class HttpRequestNode(_NodeBase):
    type: Literal["http-request"]
    config: HttpRequestConfig = Field(default_factory=HttpRequestConfig)


class ScriptNode(_NodeBase):
    type: Literal["script"]
    config: ScriptConfig = Field(default_factory=ScriptConfig)


class BubbleTextNode(_NodeBase):
    type: Literal["bubble-text"]
    config: BubbleTextConfig = Field(default_factory=BubbleTextConfig)


class BubbleNumberNode(_NodeBase):
    type: Literal["bubble-number"]
    config: BubbleNumberConfig = Field(default_factory=BubbleNumberConfig)


class BubbleImageNode(_NodeBase):
    type: Literal["bubble-image"]
    config: BubbleImageConfig = Field(default_factory=BubbleImageConfig)


class BubbleVideoNode(_NodeBase):
    type: Literal["bubble-video"]
    config: BubbleVideoConfig = Field(default_factory=BubbleVideoConfig)


class BubbleAudioNode(_NodeBase):
    type: Literal["bubble-audio"]
    config: BubbleAudioConfig = Field(default_factory=BubbleAudioConfig)


class BubbleDocumentNode(_NodeBase):
    type: Literal["bubble-document"]
    config: BubbleDocumentConfig = Field(default_factory=BubbleDocumentConfig)


class InputNode(_NodeBase):
    """Free-form inputs: the reply is stored verbatim."""

    type: Literal[
        "input-text",
        "input-mail",
        "input-phone",
        "input-image",
        "input-video",
        "input-audio",
        "input-document",
        "input-website",
        "input-webSite",
    ]
    config: InputConfig = Field(default_factory=InputConfig)

    @property
    def kind(self) -> NodeKind:
        if self.type == "input-webSite":
            return NodeKind.INPUT_WEBSITE
        return NodeKind(self.type)


class NumberInputNode(_NodeBase):
    type: Literal["input-number"]
    config: NumberInputConfig = Field(default_factory=NumberInputConfig)


class ButtonsInputNode(_NodeBase):
    type: Literal["input-buttons"]
    config: ButtonsInputConfig = Field(default_factory=ButtonsInputConfig)


class SetVariableNode(_NodeBase):
    type: Literal["set-variable"]
    config: SetVariableConfig = Field(default_factory=SetVariableConfig)


class ConditionNode(_NodeBase):
    type: Literal["condition"]
    config: ConditionConfig = Field(default_factory=ConditionConfig)


Node = Annotated[
    Union[
        StartNode,
        WebhookNode,
        HttpRequestNode,
        ScriptNode,
        BubbleTextNode,
        BubbleNumberNode,
        BubbleImageNode,
        BubbleVideoNode,
        BubbleAudioNode,
        BubbleDocumentNode,
        InputNode,
        NumberInputNode,
        ButtonsInputNode,
        SetVariableNode,
        ConditionNode,
    ],
    Field(discriminator="type"),
]

IONode = Union[WebhookNode, HttpRequestNode, ScriptNode]
BubbleNode = Union[
    BubbleTextNode,
    BubbleNumberNode,
    BubbleImageNode,
    BubbleVideoNode,
    BubbleAudioNode,
    BubbleDocumentNode,
]


# ── Graph structure ──────────────────────────────────


class CanvasPosition(_Model):
    """Editor layout position; irrelevant to execution."""

    x: float = 0.0
    y: float = 0.0


class Container(_Model):
    """An ordered run of nodes executed back-to-back."""

    id: str = Field(min_length=1)
    name: Text = ""
    position: CanvasPosition = Field(default_factory=CanvasPosition)
    nodes: tuple[Node, ...] = ()


class Edge(_Model):
    """Directed link from a container (optionally one of its branches) to a container."""

    id: str = ""
    source: str
    target: str
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")
    label: Text = ""


class Workspace(_Model):
    """The complete flow definition."""

    name: Text = ""
    description: Text = ""
    containers: tuple[Container, ...] = ()
    edges: tuple[Edge, ...] = ()

    def iter_nodes(self) -> Iterator[tuple[Container, int, Node]]:
        """Yield ``(container, index, node)`` for every node, in document order."""
        for container in self.containers:
            for index, node in enumerate(container.nodes):
                yield container, index, node


class FlowExport(_Model):
    """The editor's import/export envelope."""

    version: Text = "1.0"
    flow: Workspace
