import json

from devrig.build.compiler import TargetCompiler
from devrig.build.targets import HOT_CLIENT_MODULE, create_build_targets, with_hot_client
from devrig.build.transforms import content_hash
from devrig.core.context import DevrigContext
from devrig.server.hot_client import hot_client_modules


def _targets(root, release=False, **build):
    context = DevrigContext(config_dict={"build": build} if build else None, root_dir=root)
    return create_build_targets(context, release=release)


def test_debug_client_build_bundles_entry_and_writes_manifest(project):
    client, _ = _targets(project)

    run = TargetCompiler(client).compile()

    assert run.succeeded
    assert run.hash
    bundle = run.files["client.js"].decode("utf-8")
    assert bundle.startswith("/* client.js */\n")
    assert 'document.title = "devrig";' in bundle
    assert bundle.endswith("//# sourceMappingURL=client.js.map\n")
    assert "client.js.map" in run.files

    css_hash = content_hash(run.files["site.css"])[:8]
    manifest = json.loads((project / "build" / "assets.json").read_text())
    assert manifest["client"] == {"js": "/assets/client.js", "map": "/assets/client.js.map"}
    assert manifest["site.css"] == f"/assets/site.css?{css_hash}"
    assert run.manifest == manifest

    # client output stays in memory during development
    assert not (project / "build" / "public").exists()
    # python sources belong to the server graph
    assert "server.py" not in run.module_hashes


def test_release_client_build_hashes_names_and_skips_source_maps(project):
    client, _ = _targets(project, release=True)

    run = TargetCompiler(client).compile()

    assert run.succeeded
    bundles = [name for name in run.files if name.startswith("client.") and name.endswith(".js")]
    assert len(bundles) == 1
    assert bundles[0] != "client.js"
    assert not any(name.endswith(".map") for name in run.files)
    body = run.files[bundles[0]].decode("utf-8")
    assert "/* client.js */" not in body
    assert "sourceMappingURL" not in body
    assert run.manifest["client"] == {"js": f"/assets/{bundles[0]}"}
    css_name = run.manifest["site.css"][len("/assets/"):]
    assert css_name == f"{content_hash(run.files[css_name])[:8]}.css"


def test_stylesheet_images_inline_below_limit(project):
    src = project / "src"
    (src / "img").mkdir()
    (src / "img" / "dot.png").write_bytes(b"\x89PNG" + b"\x00" * 10)
    (src / "img" / "big.png").write_bytes(b"\x89PNG" + b"\x01" * 200)
    (src / "site.css").write_text(".a { background: url(img/dot.png); }\n.b { background: url('img/big.png'); }\n")
    client, _ = _targets(project, inline_limit=100)

    run = TargetCompiler(client).compile()

    assert run.succeeded
    css = run.files["site.css"].decode("utf-8")
    assert 'url("data:image/png;base64,' in css
    big_hash = content_hash((src / "img" / "big.png").read_bytes())[:8]
    assert f'url("/assets/img/big.png?{big_hash}")' in css
    assert run.manifest["img/big.png"] == f"/assets/img/big.png?{big_hash}"


def test_unresolvable_stylesheet_reference_fails_without_flushing(project):
    (project / "src" / "site.css").write_text(".a { background: url(missing.png); }\n")
    client, _ = _targets(project)

    run = TargetCompiler(client).compile()

    assert not run.succeeded
    assert [error.error_code for error in run.errors] == ["ERR_MODULE_NOT_FOUND"]
    assert "missing.png" in run.errors[0].message
    assert not (project / "build" / "assets.json").exists()


def test_client_script_syntax_error_fails_run(project):
    (project / "src" / "client.js").write_text("function broken() {\n")
    client, _ = _targets(project)

    run = TargetCompiler(client).compile()

    assert not run.succeeded
    assert run.errors[0].error_code == "ERR_SCRIPT_SYNTAX"
    assert run.errors[0].file_path == "client.js"


def test_missing_client_entry_is_an_error(project):
    (project / "src" / "client.js").unlink()
    client, _ = _targets(project)

    run = TargetCompiler(client).compile()

    assert not run.succeeded
    assert run.errors[0].error_code == "ERR_ENTRY_NOT_FOUND"


def test_hot_client_is_resolved_through_virtual_modules(project):
    client, _ = _targets(project)
    hot_target = with_hot_client(client)

    run = TargetCompiler(hot_target, virtual_modules=hot_client_modules()).compile()
    assert run.succeeded
    bundle = run.files["client.js"].decode("utf-8")
    assert bundle.index("devrig hot client") < bundle.index('document.title = "devrig";')
    assert HOT_CLIENT_MODULE in run.module_hashes

    unresolved = TargetCompiler(hot_target).compile()
    assert not unresolved.succeeded
    assert unresolved.errors[0].error_code == "ERR_ENTRY_NOT_FOUND"


def test_entry_outside_source_tree_is_bundled(project):
    vendor = project / "vendor"
    vendor.mkdir()
    (vendor / "polyfill.js").write_text("window.polyfilled = true;\n")
    client, _ = _targets(project, client_entries={"client": ["../vendor/polyfill.js", "client.js"]})

    run = TargetCompiler(client).compile()

    assert run.succeeded
    bundle = run.files["client.js"].decode("utf-8")
    assert bundle.index("window.polyfilled") < bundle.index("document.title")


def test_server_build_emits_python_sources(project):
    _, server = _targets(project)

    run = TargetCompiler(server).compile()

    assert run.succeeded
    assert set(run.module_hashes) == {"server.py", "views.py"}
    assert (project / "build" / "server" / "server.py").read_text() == (project / "src" / "server.py").read_text()
    assert not (project / "build" / "server" / "client.js").exists()


def test_server_syntax_error_keeps_previous_output(project):
    _, server = _targets(project)
    compiler = TargetCompiler(server)
    first = compiler.compile()
    assert first.succeeded
    previous = (project / "build" / "server" / "views.py").read_text()

    (project / "src" / "views.py").write_text("def render(path:\n")
    second = compiler.compile(changed_paths=["views.py"])

    assert not second.succeeded
    assert second.changed_paths == ["views.py"]
    assert second.errors[0].error_code == "ERR_SYNTAX"
    assert second.errors[0].line_number == 1
    assert (project / "build" / "server" / "views.py").read_text() == previous


def test_missing_server_entry_is_an_error(project):
    (project / "src" / "server.py").unlink()
    _, server = _targets(project)

    run = TargetCompiler(server).compile()

    assert not run.succeeded
    assert [error.error_code for error in run.errors] == ["ERR_ENTRY_NOT_FOUND"]


def test_removed_server_module_is_deleted_from_output(project):
    _, server = _targets(project)
    compiler = TargetCompiler(server)
    compiler.compile()
    (project / "src" / "extra.py").write_text("X = 1\n")
    compiler.compile()
    assert (project / "build" / "server" / "extra.py").exists()

    (project / "src" / "extra.py").unlink()
    run = compiler.compile()

    assert run.succeeded
    assert not (project / "build" / "server" / "extra.py").exists()


def test_unchanged_sources_produce_the_same_hash(project):
    _, server = _targets(project)
    compiler = TargetCompiler(server)

    assert compiler.compile().hash == compiler.compile().hash
