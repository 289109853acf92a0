from services.execution.models import GraphNode

from conftest import ORG_ID


def required(status):
    return sorted((m.node_id, m.required_integration) for m in status.missing)


async def test_alert_requires_one_integration_per_channel(integrations):
    nodes = [
        GraphNode("alert", "alert-send", {"channels": "sms, whatsapp, slack, pager"}),
        GraphNode("group", "whatsapp-group", {"to": "+15551230001"}),
        GraphNode("wait", "delay", {"duration": 0}),
    ]

    status = await integrations.check_workflow(ORG_ID, nodes)

    assert status.all_configured is False
    assert required(status) == [("alert", "slack"), ("alert", "twilio"), ("group", "twilio")]


async def test_stored_connection_counts_as_configured(integrations, database):
    await database.save_integration(ORG_ID, "twilio", {"accountSid": "AC1", "authToken": "t"})

    status = await integrations.check_workflow(
        ORG_ID, [GraphNode("group", "whatsapp-group", {"to": "+15551230001"})]
    )

    assert status.all_configured is True


async def test_alert_credentials_keyed_by_integration(integrations, database):
    await database.save_integration(ORG_ID, "slack", {"webhookUrl": "https://hooks.slack.com/services/T/B/X"})

    assert await integrations.get_credentials(ORG_ID, "alert-send") == {
        "slack": {"webhookUrl": "https://hooks.slack.com/services/T/B/X"},
    }
    assert await integrations.get_credentials(ORG_ID, "whatsapp-group") is None
    assert await integrations.get_credentials(ORG_ID, "delay") is None
