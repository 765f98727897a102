from pathlib import Path

import pytest

from multikey_tts.config import SynthesisConfig, load_api_keys


def test_default_config_is_valid(tmp_path):
    config = SynthesisConfig(output_directory=tmp_path / "out")

    config.validate()
    config.ensure_directories()

    assert (tmp_path / "out").is_dir()
    assert config.model_parameters() == {"temperature": 1.0, "voice_name": "Zephyr"}


@pytest.mark.parametrize(
    "overrides",
    [
        {"chunk_size_limit": 0},
        {"chunk_size_limit": 10001},
        {"max_parallel": 0},
        {"temperature": 2.5},
        {"output_format": "flac"},
    ],
)
def test_invalid_config_is_rejected(overrides):
    config = SynthesisConfig(**overrides)

    with pytest.raises(ValueError):
        config.validate()


def test_load_api_keys_from_option_and_environment():
    assert load_api_keys(" a1 , ,b2,", environ={}) == ["a1", "b2"]
    assert load_api_keys(environ={"GEMINI_API_KEYS": "x,y"}) == ["x", "y"]


def test_load_api_keys_requires_at_least_one_key():
    with pytest.raises(ValueError):
        load_api_keys(environ={})
    with pytest.raises(ValueError):
        load_api_keys(" , ", environ={"GEMINI_API_KEYS": "ignored"})


def test_output_directory_defaults_to_output():
    assert SynthesisConfig().output_directory == Path("output")
