"""
Reunite — Relay API tests
The relay runs in-process (TestClient / ASGITransport); the chat-completions
gateway is an httpx.MockTransport returning canned model replies.
"""

import json

import httpx
import pytest
from conftest import FakeClock, make_item
from fastapi.testclient import TestClient

from reunite import config, prompts
from reunite.guard import OracleGuard
from reunite.oracle import OracleClient
from reunite.relay import LlmGateway, app, get_gateway, get_store
from reunite.store import InMemoryItemStore

PATH = config.ORACLE_PATH


class FakeModel:
    """Answers chat-completions requests with a fixed message content."""

    def __init__(self, content=None, status=200):
        self.content = content
        self.status = status
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        if self.status != 200:
            return httpx.Response(self.status, text="upstream says no")
        if isinstance(self.content, dict):
            content = json.dumps(self.content)
        else:
            content = self.content
        return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})

    @property
    def user_text(self) -> str:
        return self.requests[-1]["messages"][1]["content"][0]["text"]


def _wire(item):
    return item.model_dump(mode="json")


@pytest.fixture
def model():
    return FakeModel({"matches": []})


@pytest.fixture
def store():
    return InMemoryItemStore()


@pytest.fixture
def client(model, store):
    gateway = LlmGateway(base_url="http://llm.test/v1", api_key="test-key", transport=httpx.MockTransport(model))
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


def _target():
    return make_item("t", type="lost", user_id="owner", title="Lost wallet", category="Wallets")


# ── Health / CORS ─────────────────────────────────────────────────────────────


class TestHealth:
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json() == {"status": "ok", "version": config.VERSION}

    def test_cors_preflight(self, client):
        r = client.options(
            PATH,
            headers={"Origin": "https://app.example.org", "Access-Control-Request-Method": "POST"},
        )
        assert r.status_code == 200
        assert r.headers["access-control-allow-origin"] == "*"


# ── batch_match ───────────────────────────────────────────────────────────────


class TestBatchMatch:
    def test_scores_mapped_and_filtered(self, client, model):
        model.content = {
            "matches": [
                {"index": 0, "score": 82, "reasoning": "Same brown leather"},
                {"index": 1, "score": 20, "reasoning": "Different category"},
                {"index": 5, "score": 95, "reasoning": "Out of range"},
            ]
        }
        candidates = [make_item("c0", category="Wallets"), make_item("c1")]
        r = client.post(PATH, json={"action": "batch_match", "targetItem": _wire(_target()), "items": [_wire(c) for c in candidates]})

        assert r.status_code == 200
        assert r.json() == {
            "matches": [{"itemId": "t", "matchedItemId": "c0", "score": 82, "reasoning": "Same brown leather"}]
        }
        sent = model.requests[0]
        assert sent["model"] == config.LLM_MODEL
        assert sent["response_format"] == {"type": "json_object"}
        assert sent["messages"][0] == {"role": "system", "content": prompts.BATCH_SYSTEM_PROMPT}
        assert "[1] ID: c1" in model.user_text

    def test_unparseable_reply_is_no_matches(self, client, model):
        model.content = "I think item 0 looks similar"
        r = client.post(PATH, json={"action": "batch_match", "targetItem": _wire(_target()), "items": [_wire(make_item("c0"))]})
        assert r.status_code == 200
        assert r.json() == {"matches": []}

    def test_empty_reply_is_no_matches(self, client, model):
        model.content = ""
        r = client.post(PATH, json={"action": "batch_match", "targetItem": _wire(_target()), "items": [_wire(make_item("c0"))]})
        assert r.json() == {"matches": []}


# ── find_matches ──────────────────────────────────────────────────────────────


class TestFindMatches:
    def test_candidates_come_from_store(self, client, model, store):
        store.load(
            [
                make_item("f1", type="found", user_id="u2"),
                make_item("f2", type="found", user_id="owner"),
                make_item("l1", type="lost", user_id="u3"),
                make_item("f3", type="found", user_id="u4", status="returned"),
            ]
        )
        model.content = {"matches": [{"index": 0, "score": 66, "reasoning": "Same place"}]}

        r = client.post(PATH, json={"action": "find_matches", "item": _wire(_target())})

        assert r.json()["matches"][0]["matchedItemId"] == "f1"
        text = model.user_text
        assert "ID: f1" in text
        for excluded in ("ID: f2", "ID: l1", "ID: f3"):
            assert excluded not in text

    def test_store_limit(self, client, model, store):
        store.load([make_item(f"f{i}", type="found") for i in range(25)])
        client.post(PATH, json={"action": "find_matches", "item": _wire(_target())})
        assert "[19] ID: f19" in model.user_text
        assert "ID: f20" not in model.user_text

    def test_no_candidates_skips_model(self, client, model):
        r = client.post(PATH, json={"action": "find_matches", "item": _wire(_target())})
        assert r.json() == {"matches": []}
        assert model.requests == []


# ── get_match_score ───────────────────────────────────────────────────────────


class TestMatchScore:
    def test_score(self, client, model):
        model.content = {"score": 77, "reasoning": "Same serial number"}
        r = client.post(PATH, json={"action": "get_match_score", "item": _wire(_target()), "targetItem": _wire(make_item("c0"))})
        assert r.json() == {"score": 77, "reasoning": "Same serial number"}
        assert model.requests[0]["messages"][0]["content"] == prompts.SINGLE_SYSTEM_PROMPT

    def test_missing_reasoning(self, client, model):
        model.content = {"score": 45}
        r = client.post(PATH, json={"action": "get_match_score", "item": _wire(_target()), "targetItem": _wire(make_item("c0"))})
        assert r.json() == {"score": 45, "reasoning": "Unable to determine match"}

    def test_unparseable(self, client, model):
        model.content = "maybe?"
        r = client.post(PATH, json={"action": "get_match_score", "item": _wire(_target()), "targetItem": _wire(make_item("c0"))})
        assert r.json() == {"score": 0, "reasoning": "Error analyzing match"}


# ── Errors ────────────────────────────────────────────────────────────────────


class TestErrors:
    def test_invalid_action(self, client):
        r = client.post(PATH, json={"action": "delete_everything"})
        assert r.status_code == 400
        assert r.json() == {"error": "Invalid action"}

    def test_action_without_payload(self, client):
        r = client.post(PATH, json={"action": "batch_match"})
        assert r.status_code == 400
        assert r.json() == {"error": "Invalid action"}

    def test_malformed_body(self, client):
        r = client.post(PATH, content=b"not json", headers={"Content-Type": "application/json"})
        assert r.status_code == 400

    def test_missing_api_key(self, client):
        app.dependency_overrides[get_gateway] = lambda: LlmGateway(api_key=None)
        r = client.post(PATH, json={"action": "find_matches", "item": _wire(_target())})
        assert r.status_code == 500
        assert r.json() == {"error": "LLM API key is not configured"}

    @pytest.mark.parametrize(
        "status,message",
        [
            (429, "Rate limit exceeded. Please try again later."),
            (402, "AI service requires payment. Please add credits."),
            (503, "AI API error: 503"),
        ],
    )
    def test_gateway_errors(self, client, model, status, message):
        model.status = status
        r = client.post(PATH, json={"action": "batch_match", "targetItem": _wire(_target()), "items": [_wire(make_item("c0"))]})
        assert r.status_code == 500
        assert r.json() == {"error": message}


# ── Prompts ───────────────────────────────────────────────────────────────────


class TestPrompts:
    def test_images_attached_and_capped(self):
        source = make_item("s", image_url="https://img.example.org/s.jpg")
        candidates = [make_item(f"c{i}", image_url=f"https://img.example.org/{i}.jpg") for i in range(7)]
        candidates.insert(0, make_item("ph", image_url="/placeholder.svg"))
        content = prompts.batch_messages(source, candidates)[1]["content"]
        urls = [part["image_url"]["url"] for part in content if part["type"] == "image_url"]
        assert urls[0] == "https://img.example.org/s.jpg"
        assert len(urls) == 1 + config.MAX_PROMPT_IMAGES
        assert "/placeholder.svg" not in urls

    def test_single_prompt_skips_placeholders(self):
        first = make_item("a", image_url="src/assets/bag.png")
        second = make_item("b", image_url="https://img.example.org/b.jpg")
        content = prompts.single_messages(first, second)[1]["content"]
        texts = [part["text"] for part in content if part["type"] == "text"]
        assert texts[-1] == "Above is ITEM 2 image."


# ── Client against relay ──────────────────────────────────────────────────────


class TestOracleAgainstRelay:
    @pytest.mark.anyio
    async def test_batch_match_round_trip(self, client, model):
        model.content = {"matches": [{"index": 1, "score": 91, "reasoning": "Identical sticker"}]}
        oracle = OracleClient(
            base_url="http://testserver",
            guard=OracleGuard(clock=FakeClock()),
            transport=httpx.ASGITransport(app=app),
        )
        async with oracle:
            results = await oracle.batch_match(_target(), [make_item("c0"), make_item("c1")])
        assert [(r.matched_item_id, r.score, r.reasoning) for r in results] == [("c1", 91, "Identical sticker")]

    @pytest.mark.anyio
    async def test_relay_failure_opens_breaker(self, client, model):
        model.status = 429
        guard = OracleGuard(clock=FakeClock())
        oracle = OracleClient(base_url="http://testserver", guard=guard, transport=httpx.ASGITransport(app=app))
        async with oracle:
            assert await oracle.batch_match(_target(), [make_item("c0")]) == []
        assert guard.is_open()


# ── Startup ───────────────────────────────────────────────────────────────────


class TestStartup:
    def test_items_file_seeds_store(self, tmp_path, monkeypatch):
        from reunite import relay

        path = tmp_path / "items.json"
        path.write_text(
            json.dumps(
                {
                    "items": [
                        _wire(make_item("f1", type="found")),
                        _wire(make_item("f2", type="found")),
                        {"id": "broken"},
                    ]
                }
            )
        )
        store = InMemoryItemStore()
        monkeypatch.setattr(relay, "_store", store)
        monkeypatch.setattr(config, "ITEMS_FILE", str(path))

        with TestClient(app):
            pass

        assert len(store) == 2

    def test_no_items_file(self, monkeypatch):
        from reunite import relay

        store = InMemoryItemStore()
        monkeypatch.setattr(relay, "_store", store)
        monkeypatch.setattr(config, "ITEMS_FILE", None)
        with TestClient(app) as client:
            assert client.get("/health").status_code == 200
        assert len(store) == 0
