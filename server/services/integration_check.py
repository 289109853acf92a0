"""Integration requirements for workflow nodes.

Maps node types to the third-party integration they need and checks whether
an organization has it configured, either as a stored connection or through
environment fallbacks. Also resolves the credentials handed to handlers.
"""

from dataclasses import dataclass
from typing import Dict, Any, List, Optional, Sequence, TYPE_CHECKING

from constants import ALERT_CHANNEL_INTEGRATIONS, ALERT_NODE_TYPE
from core.logging import get_logger
from services.execution.models import GraphNode

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import Database

logger = get_logger(__name__)


@dataclass(frozen=True)
class IntegrationInfo:
    integration: str
    name: str


# Node type -> integration it requires
NODE_INTEGRATION_MAP: Dict[str, IntegrationInfo] = {
    'twilio-sms': IntegrationInfo('twilio', 'Twilio SMS'),
    'twilio-whatsapp': IntegrationInfo('twilio', 'Twilio WhatsApp'),
    'whatsapp-group': IntegrationInfo('twilio', 'Twilio WhatsApp'),
    'email-send': IntegrationInfo('gmail', 'Email / Gmail'),
    'slack-send': IntegrationInfo('slack', 'Slack'),
    'discord-send': IntegrationInfo('discord', 'Discord'),
}

# Integration -> Settings attributes that together count as configured
ENV_FALLBACKS: Dict[str, Sequence[str]] = {
    'twilio': ('twilio_account_sid', 'twilio_auth_token'),
    'gmail': ('smtp_host', 'smtp_user', 'smtp_pass'),
    'slack': ('slack_webhook_url',),
    'discord': ('discord_webhook_url',),
}

# Integration -> display name, for alert channels
INTEGRATION_NAMES: Dict[str, str] = {
    'twilio': 'Twilio',
    'gmail': 'Email / Gmail',
    'slack': 'Slack',
    'discord': 'Discord',
}


@dataclass
class IntegrationCheckResult:
    configured: bool
    node_id: str
    node_type: str
    node_label: str
    required_integration: str
    integration_name: str
    has_env_fallback: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "configured": self.configured,
            "nodeId": self.node_id,
            "nodeType": self.node_type,
            "nodeLabel": self.node_label,
            "requiredIntegration": self.required_integration,
            "integrationName": self.integration_name,
            "hasEnvFallback": self.has_env_fallback,
        }


@dataclass
class WorkflowIntegrationStatus:
    all_configured: bool
    missing: List[IntegrationCheckResult]
    configured: List[IntegrationCheckResult]

    def summary(self) -> str:
        """User-facing summary of missing integrations."""
        if self.all_configured:
            return "All integrations are configured"
        names = list(dict.fromkeys(m.integration_name for m in self.missing))
        if len(names) == 1:
            return f"Configure {names[0]} in Integrations to enable this workflow"
        return f"Configure {', '.join(names[:-1])} and {names[-1]} in Integrations"


def integration_for(node_type: str) -> Optional[str]:
    info = NODE_INTEGRATION_MAP.get(node_type)
    return info.integration if info else None


def alert_channels(config: Dict[str, Any]) -> List[str]:
    channels = config.get("channels") or []
    if isinstance(channels, str):
        channels = channels.split(",")
    return [str(c).strip().lower() for c in channels if str(c).strip()]


def required_integrations(node: GraphNode) -> List[IntegrationInfo]:
    """Integrations a node needs; alert nodes need one per configured channel."""
    if node.type == ALERT_NODE_TYPE:
        integrations = dict.fromkeys(
            ALERT_CHANNEL_INTEGRATIONS[c] for c in alert_channels(node.config or {})
            if c in ALERT_CHANNEL_INTEGRATIONS
        )
        return [IntegrationInfo(i, INTEGRATION_NAMES[i]) for i in integrations]
    info = NODE_INTEGRATION_MAP.get(node.type)
    return [info] if info else []


def has_env_fallback(settings: "Settings", integration: str) -> bool:
    attrs = ENV_FALLBACKS.get(integration)
    if not attrs:
        return False
    return all(getattr(settings, attr, None) for attr in attrs)


class IntegrationChecker:
    """Checks and resolves per-organization integration credentials."""

    def __init__(self, database: "Database", settings: "Settings"):
        self.database = database
        self.settings = settings

    async def check_workflow(self, organization_id: str,
                             nodes: Sequence[GraphNode]) -> WorkflowIntegrationStatus:
        configured_types = await self.database.get_integration_types(organization_id)
        missing: List[IntegrationCheckResult] = []
        configured: List[IntegrationCheckResult] = []

        for node in nodes:
            for info in required_integrations(node):
                env_fallback = has_env_fallback(self.settings, info.integration)
                result = IntegrationCheckResult(
                    configured=info.integration in configured_types or env_fallback,
                    node_id=node.id,
                    node_type=node.type,
                    node_label=node.label or node.type,
                    required_integration=info.integration,
                    integration_name=info.name,
                    has_env_fallback=env_fallback,
                )
                (configured if result.configured else missing).append(result)

        return WorkflowIntegrationStatus(
            all_configured=not missing,
            missing=missing,
            configured=configured,
        )

    async def get_credentials(self, organization_id: str,
                              node_type: str) -> Optional[Dict[str, Any]]:
        """Stored credentials for the node's integration, or None.

        Alert nodes get {integration: credentials} for every alert channel.
        """
        if node_type == ALERT_NODE_TYPE:
            stored = {}
            for integration in dict.fromkeys(ALERT_CHANNEL_INTEGRATIONS.values()):
                creds = await self._load_credentials(organization_id, integration)
                if creds:
                    stored[integration] = creds
            return stored or None

        integration = integration_for(node_type)
        if integration is None:
            return None
        return await self._load_credentials(organization_id, integration)

    async def _load_credentials(self, organization_id: str,
                                integration: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.database.get_integration_credentials(organization_id, integration)
        except Exception as e:
            # Handlers fall back to node config and environment settings
            logger.error("Failed to load integration credentials",
                         organization_id=organization_id, integration=integration, error=str(e))
            return None
