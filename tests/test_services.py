# =============================================================================
# RealtyVoice Agent - Hosted Service Tests
# =============================================================================
"""
Tests for the receptionist, the LLM engine fallback and the lead store.

Run with: pytest tests/test_services.py -v
"""

import sys
import json
from pathlib import Path
from unittest.mock import AsyncMock, Mock, patch

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from models import WireTurn
from core.database import LeadDatabase
from core.fallback import GeminiFallback, GeminiResponse
from core.llm_engine import LLMEngine, LLMProvider, LLMResponse, to_chat_messages
from core.rate_limit import RateLimit, RateLimiter
from core.receptionist import (
    ERROR_MESSAGE,
    Catalog,
    Receptionist,
    ReceptionistFilters,
    build_receptionist_prompt,
    parse_decision,
)

CATALOG_PATH = PROJECT_ROOT / "data" / "catalog.json"


def llm_reply(text: str, success: bool = True) -> LLMResponse:
    return LLMResponse(
        text=text,
        provider=LLMProvider.OLLAMA,
        latency_ms=120.0,
        tokens_used=42,
        success=success,
        error=None if success else "unavailable",
    )


@pytest.fixture
def catalog():
    return Catalog.load(str(CATALOG_PATH))


@pytest.fixture
def mock_llm():
    llm = Mock(spec=LLMEngine)
    llm.generate = AsyncMock()
    return llm


# =============================================================================
# Catalog
# =============================================================================

class TestCatalog:
    """Test catalog loading and search."""

    def test_load(self, catalog):
        assert len(catalog.properties) == 3
        assert len(catalog.marketplace_items) == 2
        assert catalog.find("m-11").title == "Oak Dining Table"
        assert catalog.find("nope") is None

    def test_missing_file_is_empty(self, tmp_path):
        catalog = Catalog.load(str(tmp_path / "missing.json"))
        assert catalog.properties == []

    def test_search_properties_by_city_and_budget(self, catalog):
        results = catalog.search_properties(ReceptionistFilters(city="dubai", maxRent=6000))
        assert [item.id for item in results] == ["p-102"]

    def test_search_properties_by_beds(self, catalog):
        results = catalog.search_properties(ReceptionistFilters(beds=2))
        assert "p-102" not in [item.id for item in results]
        assert "p-101" in [item.id for item in results]

    def test_search_marketplace(self, catalog):
        results = catalog.search_marketplace(ReceptionistFilters(maxPrice=700))
        assert [item.id for item in results] == ["m-12"]

    def test_inventory_summary(self, catalog):
        summary = catalog.inventory_summary()
        assert "p-101: Marina View 2BR" in summary
        assert "Marketplace items:" in summary


# =============================================================================
# Receptionist
# =============================================================================

class TestParseDecision:
    """Test LLM output parsing."""

    def test_plain_json(self):
        decision = parse_decision('{"message": "Hi!", "intent": "greeting"}')
        assert decision.message == "Hi!"
        assert decision.show_listings is False

    def test_code_fence(self):
        decision = parse_decision('```json\n{"message": "Hi", "shouldShowListings": true}\n```')
        assert decision.show_listings is True

    def test_no_json_raises(self):
        with pytest.raises(ValueError):
            parse_decision("I cannot help with that.")


class TestReceptionist:
    """Test structured replies."""

    @pytest.mark.asyncio
    async def test_search_attaches_listings(self, catalog, mock_llm):
        mock_llm.generate.return_value = llm_reply(json.dumps({
            "message": "Here are some Dubai options.",
            "filters": {"city": "Dubai"},
            "intent": "search",
            "shouldShowListings": True,
        }))
        result = await Receptionist(mock_llm, catalog).reply("flats in dubai", [])

        assert result.intent == "search"
        assert {item.id for item in result.listings} == {"p-101", "p-102"}
        assert result.marketplace_items == []
        assert mock_llm.generate.await_args.kwargs["json_mode"] is True

    @pytest.mark.asyncio
    async def test_cart_action_target_attached(self, catalog, mock_llm):
        mock_llm.generate.return_value = llm_reply(json.dumps({
            "message": "Added the table.",
            "intent": "cart",
            "cartAction": {"action": "add", "itemId": "m-11"},
        }))
        result = await Receptionist(mock_llm, catalog).reply("add the table", [])

        assert result.cart_action.item_id == "m-11"
        assert result.cart_action.item_type == "marketplace"
        assert [item.id for item in result.marketplace_items] == ["m-11"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("item_type", ["property", None])
    async def test_cart_type_follows_catalog(self, catalog, mock_llm, item_type):
        mock_llm.generate.return_value = llm_reply(json.dumps({
            "message": "Added the table.",
            "intent": "cart",
            "cartAction": {"action": "add", "itemId": "m-11", "itemType": item_type},
        }))
        result = await Receptionist(mock_llm, catalog).reply("add the table", [])

        assert result.cart_action.item_type == "marketplace"
        assert result.listings == []

    @pytest.mark.asyncio
    async def test_property_cart_type_corrected(self, catalog, mock_llm):
        mock_llm.generate.return_value = llm_reply(json.dumps({
            "message": "Added the flat.",
            "cartAction": {"action": "add", "itemId": "p-101", "itemType": "furniture"},
        }))
        result = await Receptionist(mock_llm, catalog).reply("add the flat", [])

        assert result.cart_action.item_type == "property"
        assert [item.id for item in result.listings] == ["p-101"]

    @pytest.mark.asyncio
    async def test_unknown_cart_target_dropped(self, catalog, mock_llm):
        mock_llm.generate.return_value = llm_reply(json.dumps({
            "message": "Added.",
            "cartAction": {"action": "add", "itemId": "p-999"},
        }))
        result = await Receptionist(mock_llm, catalog).reply("add it", [])
        assert result.cart_action is None

    @pytest.mark.asyncio
    async def test_lead_info_passed_through(self, catalog, mock_llm):
        mock_llm.generate.return_value = llm_reply(json.dumps({
            "message": "I'll ask the agent to call you.",
            "intent": "booking",
            "shouldShowListings": True,
            "filters": {"city": "Abu Dhabi"},
            "captureLeadInfo": {"name": "Sara", "phone": "+971500000000"},
        }))
        result = await Receptionist(mock_llm, catalog).reply("call me about the villa", [])

        assert result.lead_capture.phone == "+971500000000"
        assert result.listings[0].agent_id == "agent-12"

    @pytest.mark.asyncio
    async def test_llm_failure_returns_error_reply(self, catalog, mock_llm):
        mock_llm.generate.return_value = llm_reply("", success=False)
        result = await Receptionist(mock_llm, catalog).reply("hi", [])

        assert result.message == ERROR_MESSAGE
        assert result.intent == "error"

    @pytest.mark.asyncio
    async def test_bad_json_returns_error_reply(self, catalog, mock_llm):
        mock_llm.generate.return_value = llm_reply("{not json")
        result = await Receptionist(mock_llm, catalog).reply("hi", [])
        assert result.intent == "error"

    def test_prompt_includes_history_and_inventory(self, catalog):
        history = [WireTurn(role="user", content="hi"), WireTurn(role="system", content="[Available listings: 1. A (p-1)]")]
        prompt = build_receptionist_prompt("add the first one", history, catalog)

        assert "system: [Available listings: 1. A (p-1)]" in prompt
        assert "Inventory:" in prompt
        assert prompt.endswith("User: add the first one")


# =============================================================================
# LLM Engine
# =============================================================================

class TestLLMEngine:
    """Test provider selection."""

    def make_engine(self, gemini=None, ollama_available=True):
        engine = LLMEngine(enable_fallback=gemini is not None, gemini=gemini)
        engine._initialized = True
        engine._ollama_available = ollama_available
        return engine

    def make_gemini(self, text='{"message": "from gemini"}'):
        gemini = Mock(spec=GeminiFallback)
        gemini.generate = AsyncMock(return_value=GeminiResponse(
            text=text, tokens_used=5, latency_ms=300.0, success=True,
        ))
        return gemini

    def test_chat_roles(self):
        messages = to_chat_messages([
            {"role": "user", "content": "a"},
            {"role": "agent", "content": "b"},
            {"role": "system", "content": "c"},
        ])
        assert [m["role"] for m in messages] == ["user", "assistant", "system"]

    @pytest.mark.asyncio
    async def test_ollama_success(self):
        gemini = self.make_gemini()
        engine = self.make_engine(gemini)

        with patch.object(engine, "_generate_ollama", AsyncMock(return_value=llm_reply("{}"))):
            response = await engine.generate("hi", json_mode=True)

        assert response.provider == LLMProvider.OLLAMA
        gemini.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_falls_back_on_failure(self):
        gemini = self.make_gemini()
        engine = self.make_engine(gemini)

        with patch.object(engine, "_generate_ollama", AsyncMock(return_value=llm_reply("", success=False))):
            response = await engine.generate("hi", system_prompt="sys", json_mode=True)

        assert response.provider == LLMProvider.GEMINI
        assert response.text == '{"message": "from gemini"}'
        assert gemini.generate.await_args.kwargs["json_mode"] is True

    @pytest.mark.asyncio
    async def test_falls_back_when_slow(self):
        gemini = self.make_gemini()
        engine = self.make_engine(gemini)
        slow = llm_reply("{}")
        slow.latency_ms = engine.timeout_seconds * 1000 + 1

        with patch.object(engine, "_generate_ollama", AsyncMock(return_value=slow)):
            response = await engine.generate("hi")

        assert response.provider == LLMProvider.GEMINI

    @pytest.mark.asyncio
    async def test_gemini_only_when_ollama_missing(self):
        gemini = self.make_gemini()
        engine = self.make_engine(gemini, ollama_available=False)
        response = await engine.generate("hi")
        assert response.provider == LLMProvider.GEMINI

    @pytest.mark.asyncio
    async def test_no_provider(self):
        engine = self.make_engine(gemini=None, ollama_available=False)
        response = await engine.generate("hi")

        assert response.success is False
        assert response.provider == LLMProvider.NONE

    def test_status(self):
        engine = self.make_engine(gemini=None)
        status = engine.get_status()
        assert status["gemini"] == {"enabled": False}
        assert status["ollama"]["model"] == "gemma3:1b"


class TestGeminiPrompt:
    """Test Gemini prompt flattening."""

    def test_build_prompt(self):
        prompt = GeminiFallback.build_prompt("next", [
            {"role": "user", "content": "hi"},
            {"role": "agent", "content": "hello"},
        ])
        assert prompt == "User: hi\nAssistant: hello\nUser: next\nAssistant:"

    def test_unavailable_without_key(self, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        fallback = GeminiFallback(api_key=None)
        assert fallback.initialize() is False
        assert fallback.is_available() is False


# =============================================================================
# Lead Store
# =============================================================================

class TestLeadDatabase:
    """Test lead persistence."""

    @pytest.fixture
    def db(self):
        return LeadDatabase("sqlite:///:memory:")

    def test_create_and_list(self, db):
        lead = db.create_lead({
            "agent_id": "agent-7",
            "message": "Interested in a viewing",
            "source": "ai_voice",
            "contact_phone": " +971 50 000 0000 extra digits ",
            "property_id": "p-101",
        })

        assert lead["id"] is not None
        assert lead["status"] == "new"
        assert lead["temperature"] == "warm"
        assert len(lead["contact_phone"]) <= 20

        leads = db.get_all_leads(agent_id="agent-7")
        assert [row["property_id"] for row in leads] == ["p-101"]

    def test_filter_and_count(self, db):
        for agent_id in ("agent-7", "agent-7", "seller-3"):
            db.create_lead({"agent_id": agent_id, "message": "hello"})

        assert db.get_leads_count() == 3
        assert db.get_leads_count(agent_id="agent-7") == 2
        assert len(db.get_all_leads(limit=1)) == 1
        assert db.get_all_leads(agent_id="seller-3")[0]["source"] == "form"


# =============================================================================
# Rate Limiting
# =============================================================================

class TestRateLimiter:
    """Test the per-client request windows."""

    def test_window_resets(self):
        now = [0.0]
        limiter = RateLimiter(clock=lambda: now[0])
        limit = RateLimit("test", max_requests=2, window_seconds=60)

        assert limiter.check(limit, "a") is True
        assert limiter.check(limit, "a") is True
        assert limiter.check(limit, "a") is False
        assert limiter.check(limit, "b") is True

        now[0] = 60.0
        assert limiter.check(limit, "a") is True

    def test_routes_counted_separately(self):
        limiter = RateLimiter()
        assert limiter.check(RateLimit("one", max_requests=1), "a") is True
        assert limiter.check(RateLimit("two", max_requests=1), "a") is True
        assert limiter.check(RateLimit("one", max_requests=1), "a") is False
