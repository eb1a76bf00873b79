from devrig.build.targets import (
    HOT_CLIENT_MODULE,
    SourceCategory,
    TransformPolicy,
    create_build_targets,
    with_hot_client,
)
from devrig.core.context import DevrigContext


def _context(tmp_path, **build):
    return DevrigContext(config_dict={"build": build} if build else None, root_dir=tmp_path)


def test_debug_targets_use_stable_names(tmp_path):
    client, server = create_build_targets(_context(tmp_path))

    assert client.name == "client"
    assert client.environment == "web"
    assert client.output.filename == "[name].js"
    assert client.output.chunk_filename == "[name].chunk.js"
    assert client.output.asset_name == "[path][name].[ext]?[hash:8]"
    assert client.output.source_maps is True
    assert client.output.pathinfo is True
    assert client.persist is False
    assert client.manifest_path == tmp_path / "build" / "assets.json"
    assert client.output.path == tmp_path / "build" / "public" / "assets"

    assert server.name == "server"
    assert server.environment == "server"
    assert server.entries == {"server": ("server.py",)}
    assert server.externalize_dependencies is True
    assert "assets.json" in server.externals
    assert server.output.path == tmp_path / "build" / "server"
    assert server.persist is True


def test_release_targets_hash_every_name(tmp_path):
    client, _ = create_build_targets(_context(tmp_path), release=True)

    assert client.release is True
    assert client.output.filename == "[name].[hash:8].js"
    assert client.output.asset_name == "[hash:8].[ext]"
    assert client.output.source_maps is False
    assert client.output.pathinfo is False


def test_verbose_release_keeps_path_comments(tmp_path):
    client, _ = create_build_targets(_context(tmp_path, verbose=True), release=True)
    assert client.output.pathinfo is True


def test_client_rules_classify_sources(tmp_path):
    client, server = create_build_targets(_context(tmp_path, inline_limit=100))

    assert client.rule_for("app/main.js").policy == TransformPolicy.BUNDLE
    assert client.rule_for("theme/site.scss").category == SourceCategory.STYLESHEET
    image_rule = client.rule_for("img/logo.png")
    assert image_rule.policy == TransformPolicy.INLINE
    assert image_rule.inline_limit == 100
    assert client.rule_for("notes.txt").policy == TransformPolicy.RAW
    assert client.rule_for("server.py").policy == TransformPolicy.IGNORE
    assert client.rule_for("font.woff2").policy == TransformPolicy.EMIT

    assert server.rule_for("server.py").policy == TransformPolicy.COMPILE
    assert server.rule_for("client.js").policy == TransformPolicy.IGNORE
    assert server.rule_for("templates/page.html").policy == TransformPolicy.RAW


def test_server_entry_accepts_dotted_module(tmp_path):
    _, server = create_build_targets(_context(tmp_path, server_entry="app.main"))
    assert server.entries == {"server": ("app/main.py",)}


def test_exclude_patterns_match_names_and_paths(tmp_path):
    client, _ = create_build_targets(_context(tmp_path))

    assert client.is_excluded("__pycache__/x.pyc")
    assert client.is_excluded("pkg/__pycache__/x.pyc")
    assert client.is_excluded(".hidden")
    assert not client.is_excluded("client.js")


def test_with_hot_client_prefixes_entries_after_polyfills(tmp_path):
    context = _context(tmp_path, client_entries={"client": ["polyfill.js", "client.js"], "admin": ["admin.js"]})
    client, _ = create_build_targets(context)

    hot = with_hot_client(client)

    assert hot.entries["client"] == ("polyfill.js", HOT_CLIENT_MODULE, "client.js")
    assert hot.entries["admin"] == (HOT_CLIENT_MODULE, "admin.js")
    assert client.entries["admin"] == ("admin.js",)
    assert with_hot_client(hot).entries == hot.entries
