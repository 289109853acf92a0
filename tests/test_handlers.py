"""Node handler behaviour, with outbound HTTP served by httpx.MockTransport."""

import json

from services.execution.models import GraphNode, NodeExecutionContext
from services.node_executor import NodeExecutorRegistry


async def run_node(registry, node_type, config, payload=None, credentials=None):
    payload = payload or {}
    graph_node = GraphNode("n1", node_type, config)
    context = NodeExecutionContext(
        workflow_id="wf-1",
        run_id="run-1",
        organization_id="org-test",
        node_id="n1",
        node_type=node_type,
        input={"payload": payload, **payload},
        payload=payload,
        credentials=credentials,
    )
    return await registry.execute(graph_node, context)


class TestHttpRequest:
    async def test_get_json(self, registry, http_requests):
        result = await run_node(registry, "http-request", {"url": "https://api.example.com/items"})

        assert result.success
        assert result.output["status"] == 200
        assert result.output["data"] == {"path": "/items", "method": "GET"}
        assert http_requests[0].headers["content-type"] == "application/json"

    async def test_post_sends_json_body(self, registry, http_requests):
        result = await run_node(registry, "http-request", {
            "url": "https://api.example.com/items",
            "method": "post",
            "body": {"title": "Essay"},
        })

        assert result.success
        assert result.output["method"] == "POST"
        assert json.loads(http_requests[0].content) == {"title": "Essay"}

    async def test_string_body_parsed_as_json(self, registry, http_requests):
        await run_node(registry, "http-request", {
            "url": "https://api.example.com/items",
            "method": "PUT",
            "body": '{"a": 1}',
        })
        assert json.loads(http_requests[0].content) == {"a": 1}

    async def test_text_response(self, registry):
        result = await run_node(registry, "http-request", {"url": "https://api.example.com/text"})
        assert result.output["data"] == "plain body"

    async def test_error_status_fails_node(self, registry):
        result = await run_node(registry, "http-request", {"url": "https://api.example.com/fail"})
        assert result.success is False
        assert "500" in result.error

    async def test_error_status_tolerated(self, registry):
        result = await run_node(registry, "http-request", {
            "url": "https://api.example.com/fail",
            "failOnError": False,
        })
        assert result.success
        assert result.output["status"] == 500

    async def test_invalid_method(self, registry):
        result = await run_node(registry, "http-request", {"url": "https://x.test", "method": "FETCH"})
        assert result.success is False
        assert result.error.startswith("Invalid node config")


class TestChatWebhooks:
    async def test_slack_send(self, registry, http_requests):
        result = await run_node(registry, "slack-send", {
            "message": "Assignment due tomorrow",
            "webhookUrl": "https://hooks.slack.com/services/T000/B000/XXX",
            "channel": "#class",
        })

        assert result.success
        assert result.output["status"] == "sent"
        body = json.loads(http_requests[0].content)
        assert body["text"] == "Assignment due tomorrow"
        assert body["channel"] == "#class"

    async def test_slack_webhook_from_credentials(self, registry, http_requests):
        result = await run_node(
            registry, "slack-send", {"message": "hi"},
            credentials={"webhookUrl": "https://hooks.slack.com/services/T1/B1/YYY"},
        )
        assert result.success
        assert http_requests[0].url.path == "/services/T1/B1/YYY"

    async def test_slack_without_webhook(self, registry):
        result = await run_node(registry, "slack-send", {"message": "hi"})
        assert result.success is False
        assert "webhook URL is required" in result.error

    async def test_slack_rejects_foreign_url(self, registry):
        result = await run_node(registry, "slack-send", {
            "message": "hi",
            "webhookUrl": "https://evil.example.com/hook",
        })
        assert result.success is False

    async def test_discord_send(self, registry, http_requests):
        result = await run_node(registry, "discord-send", {
            "message": "Class cancelled",
            "webhookUrl": "https://discord.com/api/webhooks/1/abc",
        })
        assert result.success
        assert json.loads(http_requests[0].content)["content"] == "Class cancelled"


class TestTwilio:
    async def test_simulated_without_credentials(self, registry, http_requests):
        result = await run_node(registry, "twilio-sms", {"to": "+15551234567", "message": "Hello"})

        assert result.success
        assert result.output["mock"] is True
        assert "Would send SMS" in result.output["preview"]
        assert http_requests == []

    async def test_whatsapp_send(self, registry, http_requests):
        result = await run_node(
            registry, "twilio-whatsapp",
            {"to": "15551234567", "message": "Reminder"},
            credentials={"accountSid": "AC1", "authToken": "secret", "whatsappFrom": "+14155550000"},
        )

        assert result.success
        assert result.output["sid"] == "SM123"
        request = http_requests[0]
        assert request.url.path == "/2010-04-01/Accounts/AC1/Messages.json"
        form = dict(pair.split("=", 1) for pair in request.content.decode().split("&"))
        assert form["To"] == "whatsapp%3A%2B15551234567"
        assert form["From"] == "whatsapp%3A%2B14155550000"


class TestWhatsAppGroup:
    TWILIO = {"accountSid": "AC1", "authToken": "secret"}

    async def test_simulated_without_credentials(self, registry, http_requests):
        result = await run_node(registry, "whatsapp-group", {
            "to": "+15551230001, +15551230002",
            "message": "Trip tomorrow",
            "groupName": "Parents",
        })

        assert result.success
        assert result.output["status"] == "simulated"
        assert result.output["recipients"] == ["+15551230001", "+15551230002"]
        assert result.output["groupName"] == "Parents"
        assert http_requests == []

    async def test_sends_to_each_recipient(self, registry, http_requests):
        result = await run_node(
            registry, "whatsapp-group",
            {"to": ["+15551230001", "+15551230002"], "message": "Trip tomorrow"},
            credentials=self.TWILIO,
        )

        assert result.success
        assert result.output["successfulSends"] == 2
        assert [r["sid"] for r in result.output["results"]] == ["SM123", "SM123"]
        assert len(http_requests) == 2
        assert all(b"whatsapp%3A" in r.content for r in http_requests)

    async def test_partial_failure_keeps_results(self, registry):
        result = await run_node(
            registry, "whatsapp-group",
            {"to": "+15551230001,+15550000000", "message": "Trip tomorrow"},
            credentials=self.TWILIO,
        )

        assert result.success is False
        assert result.error == "1 message(s) failed to send"
        assert result.output["failedSends"] == 1
        assert result.output["results"][1]["recipient"] == "+15550000000"
        assert "Invalid To number" in result.output["results"][1]["error"]

    async def test_requires_recipients(self, registry):
        result = await run_node(registry, "whatsapp-group", {"to": " , ", "message": "hi"})
        assert result.success is False
        assert "Invalid node config" in result.error


class TestAlertSend:
    async def test_all_channels_simulated(self, registry, http_requests):
        result = await run_node(registry, "alert-send", {
            "channels": "whatsapp, sms, slack, discord",
            "recipients": "+15551230001",
            "message": "Fire drill at 10:00",
            "priority": "high",
        })

        assert result.success
        assert result.output["priority"] == "high"
        assert result.output["totalChannels"] == 4
        assert result.output["successfulChannels"] == 4
        assert [r["channel"] for r in result.output["results"]] == ["whatsapp", "sms", "slack", "discord"]
        assert all(r["simulated"] for r in result.output["results"])
        assert http_requests == []

    async def test_channel_credentials_resolved_per_integration(self, registry, http_requests):
        result = await run_node(
            registry, "alert-send",
            {"channels": ["slack", "sms"], "recipients": ["+15551230001"], "message": "Snow day"},
            credentials={
                "slack": {"webhookUrl": "https://hooks.slack.com/services/T1/B1/ZZZ"},
                "twilio": {"accountSid": "AC1", "authToken": "secret"},
            },
        )

        assert result.success
        assert [r["simulated"] for r in result.output["results"]] == [False, False]
        assert http_requests[0].url.path == "/services/T1/B1/ZZZ"
        assert json.loads(http_requests[0].content)["text"] == "Snow day"
        assert http_requests[1].url.path == "/2010-04-01/Accounts/AC1/Messages.json"

    async def test_email_channel(self, registry):
        result = await run_node(registry, "alert-send", {
            "channels": ["email"],
            "recipients": "parent@example.com, office@example.com",
            "message": "Early dismissal",
            "title": "Dismissal",
        })

        assert result.success
        assert result.output["results"][0]["recipients"] == 2
        assert result.output["results"][0]["simulated"] is True

    async def test_unknown_channel_fails_node_but_others_run(self, registry):
        result = await run_node(registry, "alert-send", {
            "channels": ["pager", "discord"],
            "recipients": "+15551230001",
            "message": "Test",
        })

        assert result.success is False
        assert "pager" in result.error
        pager, discord = result.output["results"]
        assert pager == {"channel": "pager", "success": False, "error": "Unknown channel"}
        assert discord["success"] is True
        assert result.output["successfulChannels"] == 1

    async def test_every_recipient_failing_fails_channel(self, registry):
        result = await run_node(
            registry, "alert-send",
            {"channels": ["sms"], "recipients": "+15550000000", "message": "Test"},
            credentials={"twilio": {"accountSid": "AC1", "authToken": "secret"}},
        )

        assert result.success is False
        sms = result.output["results"][0]
        assert sms["successfulSends"] == 0
        assert "Invalid To number" in sms["errors"][0]


class TestEmail:
    async def test_simulated_without_smtp(self, registry):
        result = await run_node(registry, "email-send", {
            "to": "parent@example.com",
            "subject": "Attendance",
            "body": "Please check attendance.",
        })
        assert result.success
        assert result.output["mock"] is True
        assert result.output["to"] == "parent@example.com"

    async def test_invalid_recipient(self, registry):
        result = await run_node(registry, "email-send", {
            "to": "not-an-email",
            "subject": "x",
            "body": "y",
        })
        assert result.success is False


class TestEducation:
    RECORDS = [
        {"studentId": "s1", "present": True},
        {"studentId": "s1", "present": False},
        {"studentId": "s1", "present": "yes"},
        {"studentId": "s1", "present": False},
        {"studentId": "s2", "present": True},
    ]

    async def test_attendance_below_threshold(self, registry):
        result = await run_node(registry, "attendance-track", {
            "studentId": "s1",
            "threshold": 75,
            "action": "notify-parent",
            "records": self.RECORDS,
        })
        assert result.output["totalSessions"] == 4
        assert result.output["attendancePercentage"] == 50.0
        assert result.output["belowThreshold"] is True
        assert result.output["action"] == "notify-parent"

    async def test_attendance_from_input(self, registry):
        result = await run_node(
            registry, "attendance-track",
            {"studentId": "s2", "recordsField": "payload.records"},
            payload={"records": self.RECORDS},
        )
        assert result.output["attendancePercentage"] == 100.0
        assert result.output["belowThreshold"] is False

    async def test_attendance_missing_records_field(self, registry):
        result = await run_node(registry, "attendance-track", {"recordsField": "payload.nothing"})
        assert result.success is False

    async def test_assignment_create(self, registry):
        result = await run_node(registry, "assignment-create", {
            "title": "Essay",
            "dueDate": "2026-11-01",
            "classId": "c1",
        })
        assert result.output["assignmentId"].startswith("assign_")
        assert result.output["dueDate"] == "2026-11-01"

    async def test_schedule_check_sorted_and_filtered(self, registry):
        result = await run_node(registry, "schedule-check", {
            "date": "2026-10-20",
            "teacherId": "t1",
            "classes": [
                {"id": "c2", "time": "13:00", "teacherId": "t1"},
                {"id": "c1", "time": "09:00", "teacherId": "t1", "date": "2026-10-20"},
                {"id": "c3", "time": "08:00", "teacherId": "t1", "date": "2026-10-21"},
                {"id": "c4", "time": "07:00", "teacherId": "t2"},
            ],
        })
        assert [c["id"] for c in result.output["upcomingClasses"]] == ["c1", "c2"]
        assert result.output["reminderMinutes"] == 15

    async def test_schedule_check_bad_date(self, registry):
        result = await run_node(registry, "schedule-check", {"date": "20-10-2026"})
        assert result.success is False


async def test_env_fallback_for_slack(settings, http_transport, http_requests):
    settings.slack_webhook_url = "https://hooks.slack.com/services/ENV/ENV/ENV"
    registry = NodeExecutorRegistry(settings, http_transport=http_transport)

    result = await run_node(registry, "slack-send", {"message": "from env"})

    assert result.success
    assert http_requests[0].url.path == "/services/ENV/ENV/ENV"
