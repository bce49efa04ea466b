"""
Unit tests for SDK layer.

Tests the metered AI client: model selection, budget checks, fallback
and ledger debits.
"""

import os
import tempfile
from unittest.mock import Mock, patch

import httpx
import openai
import pytest

from launch_pilot.config.loader import AIConfig, Provider
from launch_pilot.core.guardrails import QuotaExceeded
from launch_pilot.core.tiers import FREE_MODEL, MID_MODEL, PREMIUM_MODEL
from launch_pilot.sdk.ai_client import AICompletionError, MeteredAIClient
from launch_pilot.storage.models import CreditsState, UsageKind
from launch_pilot.storage.repository import LedgerRepository, initialize_schema


def make_response(content="Hello!", prompt_tokens=100, completion_tokens=50):
    """Build a mock chat completion response."""
    mock_response = Mock()
    mock_response.choices = [Mock(message=Mock(content=content))]
    mock_response.usage.prompt_tokens = prompt_tokens
    mock_response.usage.completion_tokens = completion_tokens
    return mock_response


def status_error(error_class, status_code):
    request = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")
    response = httpx.Response(status_code, request=request)
    return error_class("model unavailable", response=response, body=None)


class TestMeteredAIClient:
    """Test MeteredAIClient wrapper."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.ledger = LedgerRepository(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _client(self, mock_openai_class, response=None):
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = response or make_response()
        mock_openai_class.return_value = mock_client
        return MeteredAIClient(self.ledger, api_key="test-key"), mock_client

    @patch('launch_pilot.sdk.ai_client.OpenAI')
    def test_init_uses_provider_base_url(self, mock_openai_class):
        """Test the OpenAI client is pointed at the configured provider."""
        MeteredAIClient(self.ledger, config=AIConfig(provider=Provider.GROQ), api_key="test-key")

        mock_openai_class.assert_called_once_with(
            api_key="test-key",
            base_url="https://api.groq.com/openai/v1",
            default_headers={"X-Title": "Launch Pilot"}
        )

    def test_init_missing_api_key(self, monkeypatch):
        """Test initialization fails without an API key."""
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)

        with pytest.raises(ValueError, match="OPENROUTER_API_KEY is not set"):
            MeteredAIClient(self.ledger)

    @patch('launch_pilot.sdk.ai_client.OpenAI')
    def test_complete_debits_reported_usage(self, mock_openai_class):
        """Test a successful call debits the reported token usage."""
        client, mock_client = self._client(mock_openai_class)

        text = client.complete(
            [{"role": "user", "content": "  Hello  "}],
            user_key="u1",
            max_tokens=256,
            feature="chatbot"
        )

        assert text == "Hello!"
        mock_client.chat.completions.create.assert_called_once_with(
            model=FREE_MODEL,
            messages=[{"role": "user", "content": "Hello"}],
            temperature=0.7,
            max_tokens=256
        )

        entry = self.ledger.read("u1")
        assert entry.used_this_month == 150
        assert entry.input_tokens_used == 100
        assert entry.output_tokens_used == 50

        events = self.ledger.fetch_usage_events(user_key="u1")
        assert len(events) == 1
        assert events[0].kind == UsageKind.DEBIT
        assert events[0].feature == "chatbot"
        assert events[0].model == FREE_MODEL

    @patch('launch_pilot.sdk.ai_client.OpenAI')
    def test_missing_usage_is_estimated(self, mock_openai_class):
        """Test token counts are estimated when the provider omits usage."""
        response = make_response(content="x" * 40)
        response.usage = None
        client, _ = self._client(mock_openai_class, response)

        client.complete([{"role": "user", "content": "y" * 80}], user_key="u1")

        entry = self.ledger.read("u1")
        assert entry.input_tokens_used == 20
        assert entry.output_tokens_used == 10
        assert entry.used_this_month == 30

    @patch('launch_pilot.sdk.ai_client.OpenAI')
    def test_model_follows_tier(self, mock_openai_class):
        """Test the model is chosen from the user's stored tier."""
        client, mock_client = self._client(mock_openai_class)
        self.ledger.set_tier("u1", "starter")

        client.complete([{"role": "user", "content": "Hi"}], user_key="u1")

        assert mock_client.chat.completions.create.call_args.kwargs["model"] == MID_MODEL

    @patch('launch_pilot.sdk.ai_client.OpenAI')
    def test_explicit_model_override(self, mock_openai_class):
        """Test an explicit model wins over the tier default."""
        client, mock_client = self._client(mock_openai_class)

        client.complete([{"role": "user", "content": "Hi"}], model="custom/model")

        assert mock_client.chat.completions.create.call_args.kwargs["model"] == "custom/model"

    @patch('launch_pilot.sdk.ai_client.OpenAI')
    def test_premium_model_falls_back_to_free(self, mock_openai_class):
        """Test a 404 on the premium model retries with the free model."""
        client, mock_client = self._client(mock_openai_class)
        mock_client.chat.completions.create.side_effect = [
            status_error(openai.NotFoundError, 404),
            make_response(),
        ]

        text = client.complete([{"role": "user", "content": "Hi"}], user_key="u1", tier="ultra")

        assert text == "Hello!"
        models = [call.kwargs["model"] for call in mock_client.chat.completions.create.call_args_list]
        assert models == [PREMIUM_MODEL, FREE_MODEL]
        assert self.ledger.fetch_usage_events(user_key="u1")[0].model == FREE_MODEL

    @patch('launch_pilot.sdk.ai_client.OpenAI')
    def test_other_status_errors_not_retried(self, mock_openai_class):
        """Test non-fallback errors surface as AICompletionError without debit."""
        client, mock_client = self._client(mock_openai_class)
        mock_client.chat.completions.create.side_effect = status_error(openai.InternalServerError, 500)

        with pytest.raises(AICompletionError, match="API error: 500"):
            client.complete([{"role": "user", "content": "Hi"}], user_key="u1", tier="ultra")

        assert mock_client.chat.completions.create.call_count == 1
        assert self.ledger.read("u1").used_this_month == 0
        assert self.ledger.fetch_usage_events(user_key="u1") == []

    @patch('launch_pilot.sdk.ai_client.OpenAI')
    def test_free_model_errors_not_retried(self, mock_openai_class):
        """Test a 404 on a non-premium model is not retried."""
        client, mock_client = self._client(mock_openai_class)
        mock_client.chat.completions.create.side_effect = status_error(openai.NotFoundError, 404)

        with pytest.raises(AICompletionError):
            client.complete([{"role": "user", "content": "Hi"}], user_key="u1")

        assert mock_client.chat.completions.create.call_count == 1

    @patch('launch_pilot.sdk.ai_client.OpenAI')
    def test_quota_blocks_before_call(self, mock_openai_class):
        """Test an exhausted balance blocks the request before any API call."""
        client, mock_client = self._client(mock_openai_class)
        self.ledger.save("u1", CreditsState.fresh().evolve(used_this_month=9900))

        with pytest.raises(QuotaExceeded):
            client.complete([{"role": "user", "content": "Hi"}], user_key="u1", max_tokens=512)

        mock_client.chat.completions.create.assert_not_called()
        assert self.ledger.read("u1").used_this_month == 9900

    @patch('launch_pilot.sdk.ai_client.OpenAI')
    def test_empty_messages_raises_error(self, mock_openai_class):
        """Test empty messages raises error."""
        client, _ = self._client(mock_openai_class)

        with pytest.raises(ValueError, match="messages is required"):
            client.complete(messages=[])

        with pytest.raises(ValueError, match="messages is required"):
            client.complete(messages=None)

    @patch('launch_pilot.sdk.ai_client.OpenAI')
    def test_empty_choices_return_empty_text(self, mock_openai_class):
        """Test a response without choices yields empty text."""
        response = make_response()
        response.choices = []
        client, _ = self._client(mock_openai_class, response)

        assert client.complete([{"role": "user", "content": "Hi"}]) == ""
