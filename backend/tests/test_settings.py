import pytest

from errors import ConfigError
from settings import HASH_EMBEDDING_DIM, load_settings, vector_dims_for_model


def test_defaults_without_environment() -> None:
    settings = load_settings({})

    assert settings.embedding_backend == "openai"
    assert settings.embedding_dim == 1536
    assert settings.embedding_api_base == "https://api.openai.com/v1"
    assert settings.recall_limit == 5
    assert settings.recall_min_score == pytest.approx(0.3)
    assert settings.extract_max_chars == 8000
    assert settings.extract_min_messages == 4
    assert settings.embedding_send_dimensions is False
    assert settings.decay.enabled is False
    assert settings.decay.half_life_days == pytest.approx(30.0)
    assert settings.decay.active_weight == pytest.approx(0.1)
    assert settings.checkpoint_enabled is False
    assert settings.checkpoint_auto_recover is True


def test_model_dimension_table() -> None:
    assert vector_dims_for_model("text-embedding-3-small") == 1536
    assert vector_dims_for_model("text-embedding-3-large") == 3072
    assert load_settings({"EPRO_EMBEDDING_MODEL": "text-embedding-3-large"}).embedding_dim == 3072
    assert (
        load_settings(
            {"EPRO_EMBEDDING_MODEL": "custom-embed", "EPRO_EMBEDDING_DIM": "768"}
        ).embedding_dim
        == 768
    )


def test_hash_backend_uses_local_dimension() -> None:
    settings = load_settings({"EPRO_EMBEDDING_BACKEND": "hash"})
    assert settings.embedding_dim == HASH_EMBEDDING_DIM


def test_api_backend_requires_base_url() -> None:
    with pytest.raises(ConfigError, match="EPRO_EMBEDDING_API_BASE"):
        load_settings({"EPRO_EMBEDDING_BACKEND": "api"})

    settings = load_settings(
        {
            "EPRO_EMBEDDING_BACKEND": "api",
            "EPRO_EMBEDDING_API_BASE": "http://localhost:8080/v1/embeddings/",
        }
    )
    assert settings.embedding_api_base == "http://localhost:8080/v1"


def test_unknown_backend_is_rejected() -> None:
    with pytest.raises(ConfigError, match="EPRO_EMBEDDING_BACKEND"):
        load_settings({"EPRO_EMBEDDING_BACKEND": "magic"})


def test_decay_options_are_read() -> None:
    settings = load_settings(
        {
            "EPRO_DECAY_ENABLED": "true",
            "EPRO_DECAY_HALF_LIFE_DAYS": "7",
            "EPRO_DECAY_ACTIVE_WEIGHT": "0.5",
        }
    )
    assert settings.decay.enabled is True
    assert settings.decay.half_life_days == pytest.approx(7.0)
    assert settings.decay.active_weight == pytest.approx(0.5)


@pytest.mark.parametrize(
    "name, raw",
    [
        ("EPRO_DECAY_HALF_LIFE_DAYS", "0"),
        ("EPRO_DECAY_HALF_LIFE_DAYS", "366"),
        ("EPRO_DECAY_ACTIVE_WEIGHT", "1.5"),
        ("EPRO_DECAY_ACTIVE_WEIGHT", "-0.1"),
        ("EPRO_RECALL_LIMIT", "0"),
        ("EPRO_RECALL_MIN_SCORE", "2"),
        ("EPRO_EXTRACT_MAX_CHARS", "50"),
        ("EPRO_EXTRACT_MIN_MESSAGES", "0"),
        ("EPRO_EXTRACT_MIN_MESSAGES", "101"),
    ],
)
def test_out_of_range_values_raise(name: str, raw: str) -> None:
    with pytest.raises(ConfigError, match=f"{name} must be a number between"):
        load_settings({name: raw})


@pytest.mark.parametrize("raw", ["abc", "nan", "inf", "3.5"])
def test_non_numeric_values_raise(raw: str) -> None:
    with pytest.raises(ConfigError, match="EPRO_RECALL_LIMIT must be a number"):
        load_settings({"EPRO_RECALL_LIMIT": raw})


def test_blank_values_fall_back_to_defaults() -> None:
    settings = load_settings({"EPRO_RECALL_LIMIT": "  ", "EPRO_LLM_MODEL": ""})
    assert settings.recall_limit == 5
    assert settings.llm_model == "gpt-4o-mini"


def test_capture_and_embedding_options_are_read() -> None:
    settings = load_settings(
        {"EPRO_EXTRACT_MIN_MESSAGES": "2", "EPRO_EMBEDDING_SEND_DIMENSIONS": "yes"}
    )
    assert settings.extract_min_messages == 2
    assert settings.embedding_send_dimensions is True
