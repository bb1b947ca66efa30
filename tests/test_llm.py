"""
Podroom Tests - Text generation and embedding clients
"""

import asyncio
import json

import httpx
import pytest

from podroom.config import Settings
from podroom.embeddings import Embedder, OpenAIEmbedder
from podroom.errors import ConfigurationError, UpstreamError
from podroom.llm import OllamaClient, OpenAIClient, RetryPolicy, create_llm_client
from podroom.stats import UsageStats


def transport_for(handler):
    return httpx.MockTransport(handler)


class TestOllamaClient:
    def test_generate(self):
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"response": "  cleaned text  "})

        stats = UsageStats()
        client = OllamaClient(
            base_url="http://ollama.test/",
            model="qwen",
            stats=stats,
            transport=transport_for(handler),
        )
        text = asyncio.run(client.generate("prompt", system="be terse", max_tokens=50, temperature=0.1))

        assert text == "cleaned text"
        assert captured["url"] == "http://ollama.test/api/generate"
        assert captured["body"]["system"] == "be terse"
        assert captured["body"]["options"] == {"temperature": 0.1, "num_predict": 50}
        assert captured["body"]["stream"] is False
        assert stats.llm_calls == 1

    def test_http_error_is_upstream_error(self):
        def handler(request):
            return httpx.Response(500, text="model crashed")

        stats = UsageStats()
        client = OllamaClient(base_url="http://ollama.test", stats=stats, transport=transport_for(handler))

        with pytest.raises(UpstreamError, match="HTTP 500"):
            asyncio.run(client.generate("prompt"))
        assert stats.llm_failures == 1
        assert stats.llm_calls == 0

    def test_timeout_is_upstream_error(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = OllamaClient(base_url="http://ollama.test", transport=transport_for(handler))

        with pytest.raises(UpstreamError, match="timed out"):
            asyncio.run(client.generate("prompt"))

    def test_empty_response_is_upstream_error(self):
        def handler(request):
            return httpx.Response(200, json={"response": "   "})

        client = OllamaClient(base_url="http://ollama.test", transport=transport_for(handler))

        with pytest.raises(UpstreamError, match="empty"):
            asyncio.run(client.generate("prompt"))

    def test_malformed_payload_is_upstream_error(self):
        def handler(request):
            return httpx.Response(200, json={"unexpected": True})

        client = OllamaClient(base_url="http://ollama.test", transport=transport_for(handler))

        with pytest.raises(UpstreamError, match="unexpected payload"):
            asyncio.run(client.generate("prompt"))


class TestOpenAIClient:
    def test_requires_api_key(self):
        with pytest.raises(ConfigurationError):
            OpenAIClient(api_key="")

    def test_chat_completion(self):
        captured = {}

        def handler(request):
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={"choices": [{"message": {"content": "answer"}}]},
            )

        client = OpenAIClient(
            api_key="sk-test",
            base_url="https://llm.test/v1",
            model="qwen-plus",
            transport=transport_for(handler),
        )
        text = asyncio.run(client.generate("question", system="system prompt", max_tokens=100))

        assert text == "answer"
        assert captured["auth"] == "Bearer sk-test"
        assert captured["body"]["messages"][0] == {"role": "system", "content": "system prompt"}
        assert captured["body"]["messages"][1] == {"role": "user", "content": "question"}
        assert captured["body"]["max_tokens"] == 100

    def test_factory_without_key(self):
        config = Settings(llm_provider="openai", openai_api_key="")

        with pytest.raises(ConfigurationError):
            create_llm_client(config)

    def test_factory_builds_ollama(self):
        config = Settings(llm_provider="ollama", ollama_model="llama3")

        client = create_llm_client(config)
        assert isinstance(client, OllamaClient)
        assert client.model == "llama3"


class TestRetryPolicy:
    def test_default_is_single_attempt(self):
        calls = []

        async def flaky():
            calls.append(1)
            raise UpstreamError("down")

        with pytest.raises(UpstreamError):
            asyncio.run(RetryPolicy().call(flaky))
        assert len(calls) == 1

    def test_retries_upstream_errors(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise UpstreamError("down")
            return "ok"

        policy = RetryPolicy(max_attempts=3, wait_seconds=0, max_wait_seconds=0)
        assert asyncio.run(policy.call(flaky)) == "ok"
        assert len(calls) == 3

    def test_other_errors_not_retried(self):
        calls = []

        async def broken():
            calls.append(1)
            raise KeyError("bug")

        policy = RetryPolicy(max_attempts=3, wait_seconds=0, max_wait_seconds=0)
        with pytest.raises(KeyError):
            asyncio.run(policy.call(broken))
        assert len(calls) == 1


class ListEmbedder(Embedder):
    def __init__(self, vectors_for, **kwargs):
        super().__init__(**kwargs)
        self.vectors_for = vectors_for
        self.batches = []

    async def _embed(self, texts):
        self.batches.append(list(texts))
        return self.vectors_for(texts)


class TestEmbedder:
    def test_batches_and_counts(self):
        stats = UsageStats()
        embedder = ListEmbedder(lambda texts: [[1.0, 0.0] for _ in texts], dimensions=2, stats=stats)
        texts = [f"text {i}" for i in range(20)]

        vectors = asyncio.run(embedder.embed(texts))

        assert len(vectors) == 20
        assert sum(len(b) for b in embedder.batches) == 20
        assert stats.embedded_texts == 20

    def test_wrong_dimensions(self):
        embedder = ListEmbedder(lambda texts: [[1.0] for _ in texts], dimensions=2)

        with pytest.raises(UpstreamError, match="dims"):
            asyncio.run(embedder.embed(["a"]))

    def test_wrong_count(self):
        embedder = ListEmbedder(lambda texts: [], dimensions=2)

        with pytest.raises(UpstreamError):
            asyncio.run(embedder.embed(["a"]))

    def test_empty_input(self):
        embedder = ListEmbedder(lambda texts: [], dimensions=2)
        assert asyncio.run(embedder.embed([])) == []


class TestOpenAIEmbedder:
    def test_requires_api_key(self):
        with pytest.raises(ConfigurationError):
            OpenAIEmbedder(api_key="", dimensions=2)

    def test_results_ordered_by_index(self):
        def handler(request):
            body = json.loads(request.content)
            assert body["input"] == ["first", "second"]
            return httpx.Response(
                200,
                json={
                    "data": [
                        {"index": 1, "embedding": [0.0, 1.0]},
                        {"index": 0, "embedding": [1.0, 0.0]},
                    ]
                },
            )

        embedder = OpenAIEmbedder(
            api_key="sk-test",
            base_url="https://llm.test/v1",
            dimensions=2,
            transport=httpx.MockTransport(handler),
        )
        vectors = asyncio.run(embedder.embed(["first", "second"]))

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]

    def test_http_error(self):
        embedder = OpenAIEmbedder(
            api_key="sk-test",
            base_url="https://llm.test/v1",
            dimensions=2,
            transport=httpx.MockTransport(lambda request: httpx.Response(429)),
        )

        with pytest.raises(UpstreamError):
            asyncio.run(embedder.embed(["a"]))


class TestGivenSettings:
    def test_factory_sets_default_temperature(self):
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"response": "ok"})

        client = create_llm_client(Settings(llm_provider="ollama", llm_temperature=0.9))
        client._transport = transport_for(handler)

        asyncio.run(client.generate("prompt"))

        assert client.temperature == 0.9
        assert captured["body"]["options"]["temperature"] == 0.9

    def test_embedder_batch_size(self):
        embedder = ListEmbedder(lambda texts: [[1.0, 0.0] for _ in texts], dimensions=2, batch_size=4)

        asyncio.run(embedder.embed([f"text {i}" for i in range(10)]))

        assert [len(b) for b in embedder.batches] == [4, 4, 2]
