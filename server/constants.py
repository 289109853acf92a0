"""Centralized constants for node types, statuses and dashboard events.

This module provides a single source of truth for all node type definitions,
eliminating duplicate string arrays across the codebase.
"""

from typing import Dict, FrozenSet

# =============================================================================
# TRIGGER NODE TYPES
# =============================================================================

TRIGGER_NODE_TYPES: FrozenSet[str] = frozenset([
    'trigger-manual',
    'trigger-schedule',
    'trigger-webhook',
])

# =============================================================================
# LOGIC NODE TYPES
# =============================================================================

DELAY_NODE_TYPE = 'delay'
CONDITION_NODE_TYPE = 'condition'

# Nodes whose outgoing edges are filtered by sourceHandle ("true"/"false")
CONDITIONAL_NODE_TYPES: FrozenSet[str] = frozenset([
    CONDITION_NODE_TYPE,
])

LOGIC_NODE_TYPES: FrozenSet[str] = frozenset([
    DELAY_NODE_TYPE,
    CONDITION_NODE_TYPE,
])

# =============================================================================
# INTEGRATION NODE TYPES
# =============================================================================

HTTP_NODE_TYPES: FrozenSet[str] = frozenset([
    'http-request',
])

MESSAGING_NODE_TYPES: FrozenSet[str] = frozenset([
    'slack-send',
    'discord-send',
    'twilio-sms',
    'twilio-whatsapp',
    'whatsapp-group',
    'email-send',
    'alert-send',
])

ALERT_NODE_TYPE = 'alert-send'

# Alert channel -> integration that delivers it
ALERT_CHANNEL_INTEGRATIONS: Dict[str, str] = {
    'whatsapp': 'twilio',
    'sms': 'twilio',
    'email': 'gmail',
    'slack': 'slack',
    'discord': 'discord',
}

# =============================================================================
# EDUCATION NODE TYPES
# =============================================================================

EDUCATION_NODE_TYPES: FrozenSet[str] = frozenset([
    'attendance-track',
    'assignment-create',
    'schedule-check',
])

# Every node type the engine can execute
SUPPORTED_NODE_TYPES: FrozenSet[str] = (
    TRIGGER_NODE_TYPES |
    LOGIC_NODE_TYPES |
    HTTP_NODE_TYPES |
    MESSAGING_NODE_TYPES |
    EDUCATION_NODE_TYPES
)

# Edge handle values used by conditional nodes
BRANCH_TRUE = 'true'
BRANCH_FALSE = 'false'
BRANCH_HANDLES: FrozenSet[str] = frozenset([BRANCH_TRUE, BRANCH_FALSE])

# Node id used for the synthetic run-level NodeResult
WORKFLOW_RESULT_NODE_ID = 'workflow'

# =============================================================================
# STATUSES
# =============================================================================

RUN_PENDING = 'PENDING'
RUN_RUNNING = 'RUNNING'
RUN_SUCCESS = 'SUCCESS'
RUN_FAILED = 'FAILED'

SCHEDULE_PENDING = 'PENDING'
SCHEDULE_EXECUTING = 'EXECUTING'
SCHEDULE_EXECUTED = 'EXECUTED'
SCHEDULE_FAILED = 'FAILED'
SCHEDULE_CANCELLED = 'CANCELLED'

TRIGGER_MANUAL = 'manual'
TRIGGER_SCHEDULE = 'schedule'

# node-status event values
NODE_STATUS_RUNNING = 'running'
NODE_STATUS_SUCCESS = 'success'
NODE_STATUS_ERROR = 'error'

# =============================================================================
# DASHBOARD EVENTS
# =============================================================================

EVENT_STATS_UPDATE = 'stats-update'
EVENT_NEW_RUN = 'new-run'
EVENT_RUN_COMPLETE = 'run-complete'
EVENT_WORKFLOW_CREATED = 'workflow-created'
EVENT_WORKFLOW_UPDATED = 'workflow-updated'
EVENT_WORKFLOW_DELETED = 'workflow-deleted'
EVENT_NOTIFICATION = 'notification'
EVENT_NODE_STATUS = 'node-status'
EVENT_INTEGRATION_MISSING = 'integration-missing'

DASHBOARD_EVENT_TYPES: FrozenSet[str] = frozenset([
    EVENT_STATS_UPDATE,
    EVENT_NEW_RUN,
    EVENT_RUN_COMPLETE,
    EVENT_WORKFLOW_CREATED,
    EVENT_WORKFLOW_UPDATED,
    EVENT_WORKFLOW_DELETED,
    EVENT_NOTIFICATION,
    EVENT_NODE_STATUS,
    EVENT_INTEGRATION_MISSING,
])

DASHBOARD_CHANNEL_PREFIX = 'dashboard'


def dashboard_channel(organization_id: str) -> str:
    """Broadcaster channel carrying dashboard events for one organization."""
    return f"{DASHBOARD_CHANNEL_PREFIX}:{organization_id}"
