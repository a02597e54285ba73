"""Shared constants for agent-relay.

Import-safe module with no dependencies -- can be imported from anywhere
without risk of circular imports.
"""

# Reserved keys inside tool-call arguments that the runtime resolves before
# the downstream tool executes.
SENTINEL_ARTIFACT_KEY = "$artifact"
SENTINEL_TOOL_KEY = "$tool"

# Inline citation tags the model emits in free text.
ARTIFACT_CREATE_TAG = "artifact:create"
ARTIFACT_REF_TAG = "artifact:ref"

# Built-in tool names
GET_REFERENCE_ARTIFACT_TOOL = "get_reference_artifact"
LOAD_SKILL_TOOL = "load_skill"
COMPRESS_CONTEXT_TOOL = "compress_context"

TRANSFER_TOOL_PREFIX = "transfer"
DELEGATE_TOOL_PREFIX = "delegate"

# Routing headers understood by the receiving gateway
TENANT_ID_HEADER = "x-inkeep-tenant-id"
PROJECT_ID_HEADER = "x-inkeep-project-id"
AGENT_ID_HEADER = "x-inkeep-agent-id"
SUB_AGENT_ID_HEADER = "x-inkeep-sub-agent-id"
CLIENT_TIMEZONE_HEADER = "x-inkeep-client-timezone"
CLIENT_TIMESTAMP_HEADER = "x-inkeep-client-timestamp"

NANGO_HOST = "api.nango.dev"

DEFAULT_MAX_GENERATION_STEPS = 12
MAX_GENERATION_DURATION_SECONDS = 600

RELAY_HOME_ENV = "RELAY_HOME"
SERVICE_TOKEN_SECRET_ENV = "RELAY_SERVICE_TOKEN_SECRET"
MODEL_METADATA_URL_ENV = "RELAY_MODEL_METADATA_URL"
# Bearer key of the caller, inherited by in-process delegates
CALLER_API_KEY_ENV = "RELAY_API_KEY"
