from unittest.mock import MagicMock, patch

import httpx
import pytest

from src.citerank.errors import GenerationError, GenerationTimeout
from src.citerank.generator import GeminiGenerator, build_context_prompt
from src.citerank.models import Chunk


def _generator(side_effect=None, return_value=None, max_retries=0):
    client = MagicMock()
    if side_effect is not None:
        client.models.generate_content.side_effect = side_effect
    else:
        client.models.generate_content.return_value = return_value
    return GeminiGenerator(model="test-model", max_retries=max_retries, client=client), client


def test_context_prompt_lists_sources():
    chunks = [
        Chunk(content="Employees get 25 days.", document_filename="handbook.md"),
        Chunk(content="Remote work on Fridays.", document_filename="remote.md"),
    ]
    prompt = build_context_prompt("How many days?", chunks, max_context_chars=2000)
    assert prompt.startswith("Question: How many days?")
    assert "Source 1 (handbook.md):\nEmployees get 25 days." in prompt
    assert "Source 2 (remote.md):" in prompt
    assert prompt.endswith("please answer the question.")


def test_context_prompt_respects_size_limit():
    chunks = [Chunk(content="x" * 500, document_filename=f"d{i}.md") for i in range(3)]
    prompt = build_context_prompt("q", chunks, max_context_chars=1200)
    assert "Source 2 (d1.md)" in prompt
    assert "Source 3" not in prompt


def test_generate_returns_text():
    gen, client = _generator(return_value=MagicMock(text="The answer [1]."))
    assert gen.generate("prompt") == "The answer [1]."
    kwargs = client.models.generate_content.call_args.kwargs
    assert kwargs["model"] == "test-model"
    assert kwargs["contents"] == "prompt"


def test_generate_empty_response():
    gen, _ = _generator(return_value=MagicMock(text=None))
    assert gen.generate("prompt") == ""


def test_timeout_maps_to_generation_timeout():
    gen, _ = _generator(side_effect=httpx.ReadTimeout("timed out"))
    with pytest.raises(GenerationTimeout) as excinfo:
        gen.generate("prompt")
    assert excinfo.value.prompt == "prompt"


def test_transport_error_maps_to_generation_error():
    gen, _ = _generator(side_effect=httpx.ConnectError("connection refused"))
    with pytest.raises(GenerationError) as excinfo:
        gen.generate("prompt")
    assert not isinstance(excinfo.value, GenerationTimeout)


def test_retries_with_backoff():
    gen, client = _generator(
        side_effect=[httpx.ConnectError("down"), httpx.ConnectError("down"), MagicMock(text="ok")],
        max_retries=2,
    )
    with patch("src.citerank.generator.time.sleep") as sleep:
        assert gen.generate("prompt") == "ok"

    assert client.models.generate_content.call_count == 3
    assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]


def test_gives_up_after_max_retries():
    gen, client = _generator(side_effect=httpx.ReadTimeout("slow"), max_retries=1)
    with patch("src.citerank.generator.time.sleep"):
        with pytest.raises(GenerationTimeout):
            gen.generate("prompt")
    assert client.models.generate_content.call_count == 2
