import pytest

from troupe.local_llm import LocalLLMError, call_ollama_chat


@pytest.mark.asyncio
async def test_call_ollama_chat_builds_payload(monkeypatch):
    captured: dict[str, object] = {}

    def fake_request(payload, base_url, timeout):
        captured["payload"] = payload
        captured["base_url"] = base_url
        captured["timeout"] = timeout
        return '{"type":"speak","content":"ok"}'

    monkeypatch.setattr("troupe.local_llm._perform_ollama_request", fake_request)

    result = await call_ollama_chat(
        messages=[
            {"role": "system", "content": "System context "},
            {"role": "user", "content": "   "},
            {"role": "user", "content": "User payload"},
        ],
        llm_model="llama3.1",
        temperature=0.5,
        base_url="http://localhost:11434/",
        timeout=30,
    )

    assert result == '{"type":"speak","content":"ok"}'
    payload = captured["payload"]
    assert payload["model"] == "llama3.1"
    assert payload["stream"] is False
    assert payload["options"] == {"temperature": 0.5}
    assert payload["messages"] == [
        {"role": "system", "content": "System context"},
        {"role": "user", "content": "User payload"},
    ]
    assert captured["base_url"] == "http://localhost:11434"
    assert captured["timeout"] == 30


@pytest.mark.asyncio
async def test_call_ollama_chat_uses_env_base_url(monkeypatch):
    captured = {}

    def fake_request(payload, base_url, timeout):
        captured["base_url"] = base_url
        captured["payload"] = payload
        return "hi"

    monkeypatch.setenv("OLLAMA_BASE_URL", "http://gpu-box:11434")
    monkeypatch.setattr("troupe.local_llm._perform_ollama_request", fake_request)

    await call_ollama_chat(messages=[{"role": "user", "content": "hey"}], llm_model="qwen")

    assert captured["base_url"] == "http://gpu-box:11434"
    assert "options" not in captured["payload"]


@pytest.mark.asyncio
async def test_call_ollama_chat_rejects_empty_conversation():
    with pytest.raises(LocalLLMError):
        await call_ollama_chat(messages=[{"role": "user", "content": "  "}], llm_model="qwen")
