"""Messaging node handlers - Slack, Discord, Twilio SMS/WhatsApp, Email, Alerts.

Connection details resolve in order: node config, the organization's stored
integration credentials, then environment settings. Twilio and email fall
back to a simulated preview when nothing is configured.
"""

from dataclasses import replace
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Callable, Awaitable, Dict, List, Optional, Tuple, TYPE_CHECKING

import aiosmtplib
import httpx

from core.logging import get_logger
from constants import ALERT_CHANNEL_INTEGRATIONS
from models.nodes import (
    SlackSendParams, DiscordSendParams, TwilioMessageParams, WhatsAppGroupParams,
    EmailSendParams, AlertSendParams,
)
from services.execution.exceptions import NodeExecutionError
from services.execution.models import NodeExecutionContext

if TYPE_CHECKING:
    from core.config import Settings

logger = get_logger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
TWILIO_DEFAULT_FROM = "+14155238886"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _credential(context: NodeExecutionContext, *keys: str) -> Optional[str]:
    """First non-empty credential value among keys."""
    creds = context.credentials or {}
    for key in keys:
        if creds.get(key):
            return creds[key]
    return None


async def _post_webhook(url: str, payload: Dict[str, Any],
                        transport: Optional[httpx.AsyncBaseTransport]) -> httpx.Response:
    try:
        async with httpx.AsyncClient(timeout=30.0, transport=transport) as client:
            return await client.post(url, json=payload)
    except httpx.HTTPError as e:
        raise NodeExecutionError(f"Webhook request failed: {e}") from e


# =============================================================================
# CHAT WEBHOOKS
# =============================================================================

async def handle_slack_send(
    node_id: str,
    node_type: str,
    parameters: SlackSendParams,
    context: NodeExecutionContext,
    settings: "Settings",
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> Dict[str, Any]:
    """Post a message to a Slack incoming webhook."""
    webhook_url = (parameters.webhook_url
                   or _credential(context, "webhookUrl")
                   or settings.slack_webhook_url)
    if not webhook_url:
        raise NodeExecutionError(
            "Slack webhook URL is required. Configure it in the node settings, "
            "the integration page, or set SLACK_WEBHOOK_URL."
        )

    logger.info("[Slack] Sending", node_id=node_id, channel=parameters.channel or "default")
    response = await _post_webhook(webhook_url, {
        "text": parameters.message,
        "channel": parameters.channel,
        "username": parameters.username,
        "icon_emoji": parameters.icon_emoji,
    }, transport)

    if response.status_code >= 400:
        raise NodeExecutionError(f"Slack API error: {response.status_code} {response.reason_phrase}")
    if response.text != "ok":
        raise NodeExecutionError(f"Slack returned unexpected response: {response.text}")

    return {
        "message": parameters.message,
        "channel": parameters.channel,
        "status": "sent",
        "timestamp": _now_iso(),
    }


async def handle_discord_send(
    node_id: str,
    node_type: str,
    parameters: DiscordSendParams,
    context: NodeExecutionContext,
    settings: "Settings",
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> Dict[str, Any]:
    """Post a message to a Discord webhook. Discord answers 204 on success."""
    webhook_url = (parameters.webhook_url
                   or _credential(context, "webhookUrl")
                   or settings.discord_webhook_url)
    if not webhook_url:
        raise NodeExecutionError(
            "Discord webhook URL is required. Configure it in the node settings, "
            "the integration page, or set DISCORD_WEBHOOK_URL."
        )

    logger.info("[Discord] Sending", node_id=node_id, username=parameters.username)
    response = await _post_webhook(webhook_url, {
        "content": parameters.message,
        "username": parameters.username,
        "avatar_url": parameters.avatar_url,
    }, transport)

    if response.status_code >= 400:
        detail = response.reason_phrase
        try:
            detail = response.json().get("message", detail)
        except ValueError:
            pass
        raise NodeExecutionError(f"Discord API error: {response.status_code} {detail}")

    return {
        "message": parameters.message,
        "username": parameters.username,
        "status": "sent",
        "timestamp": _now_iso(),
    }


# =============================================================================
# TWILIO
# =============================================================================

def _twilio_auth(parameters: Any, context: NodeExecutionContext,
                 settings: "Settings") -> Tuple[Optional[str], Optional[str]]:
    account_sid = (parameters.account_sid
                   or _credential(context, "accountSid")
                   or settings.twilio_account_sid)
    auth_token = (parameters.auth_token
                  or _credential(context, "authToken")
                  or settings.twilio_auth_token)
    return account_sid, auth_token


async def handle_twilio_message(
    node_id: str,
    node_type: str,
    parameters: TwilioMessageParams,
    context: NodeExecutionContext,
    settings: "Settings",
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> Dict[str, Any]:
    """Send an SMS or WhatsApp message through the Twilio Messages API.

    Without an account SID and auth token the send is simulated and the
    output carries a preview instead of a message SID.
    """
    whatsapp = node_type == "twilio-whatsapp"
    channel = "WhatsApp" if whatsapp else "SMS"

    account_sid, auth_token = _twilio_auth(parameters, context, settings)

    if whatsapp:
        from_number = (parameters.from_number
                       or _credential(context, "whatsappFrom", "fromNumber", "phoneNumber")
                       or settings.twilio_whatsapp_from
                       or settings.twilio_phone_number
                       or TWILIO_DEFAULT_FROM)
    else:
        from_number = (parameters.from_number
                       or _credential(context, "phoneNumber", "fromNumber")
                       or settings.twilio_phone_number
                       or TWILIO_DEFAULT_FROM)

    if not account_sid or not auth_token:
        logger.warning("Twilio credentials not configured, simulating", node_id=node_id, channel=channel)
        return {
            "mock": True,
            "preview": f"Would send {channel} to {parameters.to}: {parameters.message}",
            "to": parameters.to,
            "body": parameters.message,
            "note": "Configure Twilio in the integration page or set TWILIO_* environment variables",
            "timestamp": _now_iso(),
        }

    to = parameters.to.replace("whatsapp:", "")
    to = to if to.startswith("+") else f"+{to}"
    from_number = from_number.replace("whatsapp:", "")
    if whatsapp:
        to, from_number = f"whatsapp:{to}", f"whatsapp:{from_number}"

    logger.info("[Twilio] Sending", node_id=node_id, channel=channel, to=to)
    try:
        async with httpx.AsyncClient(timeout=30.0, transport=transport) as client:
            response = await client.post(
                f"{TWILIO_API_BASE}/Accounts/{account_sid}/Messages.json",
                auth=(account_sid, auth_token),
                data={"From": from_number, "To": to, "Body": parameters.message},
            )
    except httpx.HTTPError as e:
        raise NodeExecutionError(f"Twilio {channel} failed: {e}") from e

    try:
        data = response.json()
    except ValueError:
        data = {}

    if response.status_code >= 400:
        raise NodeExecutionError(
            f"Twilio {channel} failed: {data.get('message', response.reason_phrase)} "
            f"(Code: {data.get('code')})"
        )

    return {
        "sid": data.get("sid"),
        "to": data.get("to", to),
        "from": data.get("from", from_number),
        "body": parameters.message,
        "status": data.get("status", "queued"),
        "timestamp": _now_iso(),
    }


async def handle_whatsapp_group(
    node_id: str,
    node_type: str,
    parameters: WhatsAppGroupParams,
    context: NodeExecutionContext,
    settings: "Settings",
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> Dict[str, Any]:
    """Send one WhatsApp message to every number in the group.

    Each recipient is sent separately; the node fails when any send fails,
    and the per-recipient results are kept on the failed node's output.
    """
    account_sid, auth_token = _twilio_auth(parameters, context, settings)
    if not account_sid or not auth_token:
        logger.warning("Twilio credentials not configured, simulating group send",
                       node_id=node_id, recipients=len(parameters.to))
        return {
            "status": "simulated",
            "recipients": parameters.to,
            "message": parameters.message,
            "groupName": parameters.group_name,
            "note": "Configure Twilio in the integration page or set TWILIO_* environment variables",
            "timestamp": _now_iso(),
        }

    results: List[Dict[str, Any]] = []
    for recipient in parameters.to:
        try:
            sent = await handle_twilio_message(
                node_id, "twilio-whatsapp",
                TwilioMessageParams(
                    type="twilio-whatsapp",
                    to=recipient,
                    message=parameters.message,
                    account_sid=account_sid,
                    auth_token=auth_token,
                    from_number=parameters.from_number,
                ),
                context, settings, transport,
            )
        except (NodeExecutionError, ValueError) as e:
            results.append({"recipient": recipient, "success": False, "error": str(e)})
            continue
        results.append({"recipient": recipient, "success": True,
                        "sid": sent.get("sid"), "status": sent.get("status")})

    succeeded = sum(1 for r in results if r["success"])
    output = {
        "results": results,
        "groupName": parameters.group_name,
        "totalRecipients": len(results),
        "successfulSends": succeeded,
        "failedSends": len(results) - succeeded,
        "timestamp": _now_iso(),
    }
    logger.info("[WhatsApp Group] Sent", node_id=node_id, sent=succeeded, total=len(results))
    if succeeded < len(results):
        raise NodeExecutionError(f"{len(results) - succeeded} message(s) failed to send",
                                 output=output)
    return output


# =============================================================================
# EMAIL
# =============================================================================

async def handle_email_send(
    node_id: str,
    node_type: str,
    parameters: EmailSendParams,
    context: NodeExecutionContext,
    settings: "Settings"
) -> Dict[str, Any]:
    """Send a plain-text email over SMTP (simulated when SMTP is unset)."""
    host = parameters.smtp_host or _credential(context, "host") or settings.smtp_host
    user = parameters.smtp_user or _credential(context, "user") or settings.smtp_user
    password = parameters.smtp_pass or _credential(context, "pass") or settings.smtp_pass
    port = int(parameters.smtp_port or _credential(context, "port") or settings.smtp_port)

    if not host or not user or not password:
        logger.warning("SMTP not configured, simulating email send", node_id=node_id)
        return {
            "mock": True,
            "preview": f"Would send email to {parameters.to}",
            "to": parameters.to,
            "subject": parameters.subject,
            "body": parameters.body,
            "note": "Configure SMTP in the integration page or set SMTP_* environment variables",
            "timestamp": _now_iso(),
        }

    sender = parameters.from_address or user
    message = EmailMessage()
    message["From"] = sender
    message["To"] = parameters.to
    message["Subject"] = parameters.subject
    message.set_content(parameters.body)

    logger.info("[Email] Sending", node_id=node_id, to=parameters.to, smtp_host=host)
    try:
        _, reply = await aiosmtplib.send(
            message,
            hostname=host,
            port=port,
            username=user,
            password=password,
            use_tls=port == 465,
            start_tls=port == 587,
            timeout=30,
        )
    except aiosmtplib.SMTPException as e:
        raise NodeExecutionError(f"Email send failed: {e}") from e

    return {
        "to": parameters.to,
        "from": sender,
        "subject": parameters.subject,
        "status": "sent",
        "reply": reply,
        "timestamp": _now_iso(),
    }


# =============================================================================
# ALERTS
# =============================================================================

async def _send_each(recipients: List[str],
                     send: Callable[[str], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
    sent = 0
    simulated = True
    errors: List[str] = []
    for recipient in recipients:
        try:
            output = await send(recipient)
        except (NodeExecutionError, ValueError) as e:
            errors.append(f"{recipient}: {e}")
            continue
        sent += 1
        simulated = simulated and bool(output.get("mock"))

    result: Dict[str, Any] = {
        "success": sent > 0,
        "recipients": len(recipients),
        "successfulSends": sent,
        "simulated": sent > 0 and simulated,
    }
    if errors:
        result["errors"] = errors
    return result


async def _send_alert_channel(
    channel: str,
    node_id: str,
    parameters: AlertSendParams,
    context: NodeExecutionContext,
    settings: "Settings",
    transport: Optional[httpx.AsyncBaseTransport]
) -> Dict[str, Any]:
    integration = ALERT_CHANNEL_INTEGRATIONS.get(channel)
    if integration is None:
        logger.warning("[Alert] Unknown channel", node_id=node_id, channel=channel)
        return {"success": False, "error": "Unknown channel"}

    # Alert credentials arrive keyed by integration
    channel_context = replace(context, credentials=(context.credentials or {}).get(integration))

    if channel in ("whatsapp", "sms"):
        node_type = "twilio-whatsapp" if channel == "whatsapp" else "twilio-sms"
        return await _send_each(parameters.recipients, lambda to: handle_twilio_message(
            node_id, node_type,
            TwilioMessageParams(type=node_type, to=to, message=parameters.message),
            channel_context, settings, transport,
        ))

    if channel == "email":
        return await _send_each(parameters.recipients, lambda to: handle_email_send(
            node_id, "email-send",
            EmailSendParams(type="email-send", to=to, subject=parameters.title,
                            body=parameters.message),
            channel_context, settings,
        ))

    if channel == "slack":
        configured = _credential(channel_context, "webhookUrl") or settings.slack_webhook_url
        send = handle_slack_send
        params = SlackSendParams(type="slack-send", message=parameters.message)
    else:
        configured = _credential(channel_context, "webhookUrl") or settings.discord_webhook_url
        send = handle_discord_send
        params = DiscordSendParams(type="discord-send", message=parameters.message[:2000])

    if not configured:
        logger.warning("[Alert] Webhook not configured, simulating", node_id=node_id, channel=channel)
        return {"success": True, "simulated": True}
    await send(node_id, params.type, params, channel_context, settings, transport)
    return {"success": True, "simulated": False}


async def handle_alert_send(
    node_id: str,
    node_type: str,
    parameters: AlertSendParams,
    context: NodeExecutionContext,
    settings: "Settings",
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> Dict[str, Any]:
    """Fan one alert out over several channels.

    Channels are attempted in order and a failing channel does not stop the
    rest. The node fails unless every channel succeeded; the per-channel
    results are kept on the output either way.
    """
    logger.info("[Alert] Sending", node_id=node_id, channels=parameters.channels,
                priority=parameters.priority)

    results: List[Dict[str, Any]] = []
    for channel in parameters.channels:
        try:
            outcome = await _send_alert_channel(channel, node_id, parameters, context,
                                                settings, transport)
        except (NodeExecutionError, ValueError) as e:
            logger.error("[Alert] Channel failed", node_id=node_id, channel=channel, error=str(e))
            outcome = {"success": False, "error": str(e)}
        results.append({"channel": channel, **outcome})

    succeeded = sum(1 for r in results if r["success"])
    output = {
        "results": results,
        "priority": parameters.priority,
        "totalChannels": len(results),
        "successfulChannels": succeeded,
        "timestamp": _now_iso(),
    }
    if succeeded < len(results):
        failed = [r["channel"] for r in results if not r["success"]]
        raise NodeExecutionError(f"Alert failed on channel(s): {', '.join(failed)}", output=output)
    return output
