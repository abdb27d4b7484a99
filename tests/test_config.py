import pytest

from crisp.crisp_config import DEFAULT_TOKEN_LIST, CrispConfig, load_config


def test_defaults():
    config = load_config(environ={})
    assert config == CrispConfig()
    assert config.token_list_url == DEFAULT_TOKEN_LIST
    assert config.debug is False


def test_yaml_file_with_dashed_keys(tmp_path):
    path = tmp_path / "crisp.yaml"
    path.write_text("ipfs-gateway: https://gw.example/ipfs/\nhttp_retries: 5\n", encoding="utf-8")
    config = load_config(str(path), environ={})
    assert config.ipfs_gateway == "https://gw.example/ipfs/"
    assert config.http_retries == 5


def test_config_path_from_environment(tmp_path):
    path = tmp_path / "crisp.yaml"
    path.write_text("debug: true\n", encoding="utf-8")
    config = load_config(environ={"CRISP_CONFIG": str(path)})
    assert config.debug is True


def test_environment_overrides_file(tmp_path):
    path = tmp_path / "crisp.yaml"
    path.write_text("http_timeout: 9\n", encoding="utf-8")
    config = load_config(str(path), environ={
        "CRISP_HTTP_TIMEOUT": "2.5",
        "CRISP_TOKEN_LIST": "https://tokens.example/list.json",
        "CRISP_DEBUG": "0",
    })
    assert config.http_timeout == 2.5
    assert config.token_list_url == "https://tokens.example/list.json"
    assert config.debug is False


def test_empty_file(tmp_path):
    path = tmp_path / "crisp.yaml"
    path.write_text("", encoding="utf-8")
    assert load_config(str(path), environ={}) == CrispConfig()


def test_unknown_keys_are_rejected(tmp_path):
    path = tmp_path / "crisp.yaml"
    path.write_text("gateway: nope\n", encoding="utf-8")
    with pytest.raises(ValueError) as exc:
        load_config(str(path), environ={})
    assert "unknown configuration keys: gateway" in str(exc.value)


def test_file_must_hold_a_mapping(tmp_path):
    path = tmp_path / "crisp.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(str(path), environ={})
