from devrig.config.loader import interpolate_env_vars, load_config

def test_load_config_no_file(tmp_path):
    config = load_config(tmp_path / "nonexistent.yaml")
    assert config == {}

def test_load_config_basic(tmp_path):
    config_file = tmp_path / "devrig.yaml"
    config_file.write_text("""
build:
  source_dir: "app"
  inline_limit: 1024
server:
  port: 4000
""")

    config = load_config(config_file)
    assert config["build"]["source_dir"] == "app"
    assert config["build"]["inline_limit"] == 1024
    assert config["server"]["port"] == 4000

def test_load_config_interpolation(tmp_path, monkeypatch):
    monkeypatch.setenv("DEVRIG_PORT", "8080")
    monkeypatch.delenv("DEVRIG_MISSING", raising=False)

    config_file = tmp_path / "devrig.yaml"
    config_file.write_text("""
server:
  port: ${DEVRIG_PORT}
  host: "${DEVRIG_HOST_UNSET:0.0.0.0}"
devrig:
  app_name: "${DEVRIG_MISSING}"
""")

    config = load_config(config_file)
    assert config["server"]["port"] == 8080
    assert config["server"]["host"] == "0.0.0.0"
    assert config["devrig"]["app_name"] == ""

def test_load_config_drops_unknown_sections(tmp_path):
    config_file = tmp_path / "devrig.yaml"
    config_file.write_text("""
unknown_key: true
watch:
  debounce_ms: 50
""")

    config = load_config(config_file)
    assert "unknown_key" not in config
    assert config["watch"]["debounce_ms"] == 50

def test_load_config_malformed_yaml_falls_back_to_defaults(tmp_path):
    config_file = tmp_path / "devrig.yaml"
    config_file.write_text("build: [unclosed\n")

    assert load_config(config_file) == {}

def test_load_config_non_mapping_document(tmp_path):
    config_file = tmp_path / "devrig.yaml"
    config_file.write_text("- just\n- a list\n")

    assert load_config(config_file) == {}

def test_interpolate_env_vars_keeps_plain_text(monkeypatch):
    monkeypatch.setenv("NAME", "rig")
    assert interpolate_env_vars("dev${NAME} and $NAME") == "devrig and $NAME"
