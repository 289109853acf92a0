"""Node handlers package.

This package contains all node execution handlers organized by category:
- utility.py: Triggers, Delay, Condition
- http.py: HTTP Request
- messaging.py: Slack, Discord, Twilio SMS/WhatsApp, WhatsApp groups, Email, Alerts
- education.py: Attendance tracking, Assignment creation, Schedule check

Every handler has the signature
`(node_id, node_type, parameters, context, **deps) -> output` and raises to
fail its node.
"""

# Utility handlers
from .utility import (
    handle_trigger,
    handle_delay,
    handle_condition,
)

# HTTP handlers
from .http import (
    handle_http_request,
)

# Messaging handlers
from .messaging import (
    handle_slack_send,
    handle_discord_send,
    handle_twilio_message,
    handle_whatsapp_group,
    handle_email_send,
    handle_alert_send,
)

# Education handlers
from .education import (
    handle_attendance_track,
    handle_assignment_create,
    handle_schedule_check,
)

__all__ = [
    'handle_trigger',
    'handle_delay',
    'handle_condition',
    'handle_http_request',
    'handle_slack_send',
    'handle_discord_send',
    'handle_twilio_message',
    'handle_whatsapp_group',
    'handle_email_send',
    'handle_alert_send',
    'handle_attendance_track',
    'handle_assignment_create',
    'handle_schedule_check',
]
