"""Tests for the Cohere re-rank client."""

from __future__ import annotations

from unittest.mock import patch

import httpx
import pytest

from konsul.services.reranker import CohereReranker, RerankError, build_default_reranker

DOCS = ["opening hours", "pricing", "parking"]


@pytest.fixture
def reranker():
    return CohereReranker("co-test", model="rerank-test")


class TestRerank:
    def test_returns_indices_in_relevance_order(self, reranker, mock_http_response):
        body = {"results": [{"index": 2, "relevance_score": 0.9}, {"index": 0, "relevance_score": 0.4}]}
        with patch.object(reranker._client, "post", return_value=mock_http_response(body)) as post:
            assert reranker.rerank("where do I park?", DOCS, top_n=2) == [2, 0]

        payload = post.call_args.kwargs["json"]
        assert payload == {"model": "rerank-test", "query": "where do I park?", "documents": DOCS, "top_n": 2}

    def test_error_status_raises(self, reranker, mock_http_response):
        with patch.object(reranker._client, "post", return_value=mock_http_response({}, 429)):
            with pytest.raises(RerankError, match="429"):
                reranker.rerank("q", DOCS, top_n=1)

    def test_timeout_raises(self, reranker):
        with patch.object(reranker._client, "post", side_effect=httpx.ReadTimeout("slow")):
            with pytest.raises(RerankError):
                reranker.rerank("q", DOCS, top_n=1)

    def test_malformed_body_raises(self, reranker, mock_http_response):
        with patch.object(reranker._client, "post", return_value=mock_http_response({"results": [{"score": 1}]})):
            with pytest.raises(RerankError):
                reranker.rerank("q", DOCS, top_n=1)

    def test_list_body_raises(self, reranker, mock_http_response):
        with patch.object(reranker._client, "post", return_value=mock_http_response([{"index": 1}])):
            with pytest.raises(RerankError, match="unexpected body"):
                reranker.rerank("q", DOCS, top_n=1)

    def test_out_of_range_index_raises(self, reranker, mock_http_response):
        with patch.object(reranker._client, "post", return_value=mock_http_response({"results": [{"index": 7}]})):
            with pytest.raises(RerankError, match="out-of-range"):
                reranker.rerank("q", DOCS, top_n=1)


class TestDefaultReranker:
    def test_absent_without_api_key(self):
        assert build_default_reranker() is None

    def test_built_with_api_key(self, monkeypatch):
        monkeypatch.setenv("COHERE_API_KEY", "co-live")
        assert isinstance(build_default_reranker(), CohereReranker)
