# backend/tests/test_notifications.py

import pytest
import resend

from notifications import CriticalStockNotifier
from weighing_models import WeighingRequest


def _request(amount):
    return WeighingRequest(
        compound_id="ATRAZINE_UUID",
        weighed_amount=amount,
        prepared_volume=10,
        prepared_by="analyst"
    )


@pytest.fixture
def sent(monkeypatch):
    calls = []

    def fake_send(params):
        calls.append(params)
        return {"id": "email_1"}

    monkeypatch.setattr(resend.Emails, "send", fake_send)
    return calls


class TestCriticalStockNotifier:

    @pytest.mark.asyncio
    async def test_below_critical_sends_email(self, service, sample_compound, sent):
        result = await service.submit(_request(460))
        notifier = CriticalStockNotifier("re_test", "lab@lab.test", ["manager@lab.test"])

        response = await notifier.notify_critical_stock(result)

        assert response == {"id": "email_1"}
        assert len(sent) == 1
        assert sent[0]["to"] == ["manager@lab.test"]
        assert "Atrazine" in sent[0]["subject"]
        assert "40.00 mg" in sent[0]["html"]

    @pytest.mark.asyncio
    async def test_above_critical_sends_nothing(self, service, sample_compound, sent):
        result = await service.submit(_request(12.5))
        notifier = CriticalStockNotifier("re_test", "lab@lab.test", ["manager@lab.test"])

        assert await notifier.notify_critical_stock(result) is None
        assert sent == []

    @pytest.mark.asyncio
    async def test_missing_api_key_skips(self, sent):
        notifier = CriticalStockNotifier(None, "lab@lab.test", ["manager@lab.test"])

        assert await notifier.send_email_notification(["manager@lab.test"], "subject", "<p>x</p>") is None
        assert sent == []

    @pytest.mark.asyncio
    async def test_no_recipients_skips(self, sent):
        notifier = CriticalStockNotifier("re_test", "lab@lab.test", ["", None])

        assert notifier.recipients == []
        assert await notifier.send_email_notification(notifier.recipients, "subject", "<p>x</p>") is None
        assert sent == []

    @pytest.mark.asyncio
    async def test_send_failure_is_logged_not_raised(self, monkeypatch):
        def failing_send(params):
            raise RuntimeError("resend unavailable")

        monkeypatch.setattr(resend.Emails, "send", failing_send)
        notifier = CriticalStockNotifier("re_test", "lab@lab.test", ["manager@lab.test"])

        assert await notifier.send_email_notification(["manager@lab.test"], "subject", "<p>x</p>") is None

