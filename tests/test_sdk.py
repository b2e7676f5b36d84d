"""
Unit tests for SDK layer.

Tests the metered OpenAI client wrapper and completion charging.
"""

import os
import shutil
import tempfile
from datetime import datetime
from decimal import Decimal
from unittest.mock import Mock, patch

import pytest

from llm_meter.config.loader import MeterConfig
from llm_meter.core.clock import ManualClock
from llm_meter.core.token_counter import UsageEstimator
from llm_meter.runtime import Runtime
from llm_meter.sdk.openai_client import MeteredOpenAI
from llm_meter.storage.repository import upsert_model_price


def _response(content="Paris", prompt_tokens=100, completion_tokens=50, with_usage=True):
    response = Mock()
    response.id = "chat_123"
    response.choices = [Mock()]
    response.choices[0].message.role = "assistant"
    response.choices[0].message.content = content
    if with_usage:
        response.usage.prompt_tokens = prompt_tokens
        response.usage.completion_tokens = completion_tokens
    else:
        response.usage = None
    return response


class TestMeteredOpenAI:
    """Test MeteredOpenAI client wrapper."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        self.runtime = Runtime(
            MeterConfig(db_path=self.db_path, init_balance=Decimal("5")),
            clock=ManualClock(datetime(2024, 5, 20, 9, 0)),
            estimator=UsageEstimator(encode=lambda text: text.split()),
        )
        self.runtime.ledger.get_or_create_user("u1", "ann@example.com", "Ann")
        upsert_model_price(
            "gpt-4", "GPT-4", Decimal("30"), Decimal("60"), db_path=self.db_path
        )

    def teardown_method(self):
        """Clean up test environment."""
        self.runtime.shutdown()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @patch('llm_meter.sdk.openai_client.OpenAI')
    def test_init_success(self, mock_openai_class):
        """Test successful initialization."""
        mock_openai_class.return_value = Mock()

        client = MeteredOpenAI(model="gpt-4", runtime=self.runtime)

        assert client.model == "gpt-4"
        assert client.runtime is self.runtime
        assert client.client is mock_openai_class.return_value

    def test_init_missing_model(self):
        """Test initialization fails with missing model."""
        with pytest.raises(ValueError, match="model is required"):
            MeteredOpenAI(model="", runtime=self.runtime, client=Mock())

        with pytest.raises(ValueError, match="model is required"):
            MeteredOpenAI(model=None, runtime=self.runtime, client=Mock())

    def test_chat_charges_reported_usage(self):
        """Test a completion is charged from the provider's usage."""
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = _response()
        client = MeteredOpenAI(model="gpt-4", runtime=self.runtime, client=mock_client)

        messages = [{"role": "user", "content": "Capital of France?"}]
        response, outcome = client.chat("u1", messages, user_name="Ann", temperature=0)

        mock_client.chat.completions.create.assert_called_once_with(
            model="gpt-4", messages=messages, temperature=0
        )
        assert response is mock_client.chat.completions.create.return_value
        assert outcome.success
        # 100/1e6 * 30 + 50/1e6 * 60 = 0.003 + 0.003
        assert outcome.charge.total_cost == Decimal("0.006")
        assert outcome.charge.token_source.value == "reported"
        assert outcome.new_balance == Decimal("4.994")

        records = self.runtime.ledger.fetch_usage_records("u1")
        assert len(records) == 1
        assert records[0].user_name == "Ann"
        assert records[0].input_tokens == 100
        assert records[0].output_tokens == 50

    def test_chat_without_usage_tokenizes(self):
        """Test a response without usage falls back to tokenization."""
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = _response(
            content="It is Paris", with_usage=False
        )
        client = MeteredOpenAI(model="gpt-4", runtime=self.runtime, client=mock_client)

        _, outcome = client.chat("u1", [{"role": "user", "content": "Capital of France?"}])

        assert outcome.charge.token_source.value == "tokenized"
        assert outcome.charge.output_tokens == 3
        assert outcome.charge.input_tokens == 3

    def test_chat_failed_charge_returns_response(self):
        """Test an uncharged completion still returns the response."""
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = _response()
        client = MeteredOpenAI(model="gpt-4", runtime=self.runtime, client=mock_client)

        response, outcome = client.chat("ghost", [{"role": "user", "content": "hi"}])

        assert response is not None
        assert not outcome.success
        assert outcome.error_type == "USER_NOT_FOUND"

    def test_chat_empty_messages(self):
        """Test chat fails with empty messages."""
        client = MeteredOpenAI(model="gpt-4", runtime=self.runtime, client=Mock())
        with pytest.raises(ValueError, match="messages is required"):
            client.chat("u1", [])

    def test_openai_error_propagates(self):
        """Test provider errors are not swallowed and nothing is charged."""
        mock_client = Mock()
        mock_client.chat.completions.create.side_effect = Exception("API Error")
        client = MeteredOpenAI(model="gpt-4", runtime=self.runtime, client=mock_client)

        with pytest.raises(Exception, match="API Error"):
            client.chat("u1", [{"role": "user", "content": "hi"}])
        assert self.runtime.ledger.fetch_usage_records() == []

    def test_chat_starts_reset_scheduler(self):
        """Test the first chat initializes the runtime and runs the due reset."""
        self.runtime.ledger.set_balance("u1", Decimal("1"))
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = _response()
        client = MeteredOpenAI(model="gpt-4", runtime=self.runtime, client=mock_client)
        assert not self.runtime.initialized

        _, outcome = client.chat("u1", [{"role": "user", "content": "hi"}])

        assert self.runtime.initialized
        assert self.runtime.scheduler.is_running
        assert self.runtime.reset_state.get_last_reset() == datetime(2024, 5, 20, 9, 0)
        # reset to the default of 5 before the 0.006 charge
        assert outcome.new_balance == Decimal("4.994")
