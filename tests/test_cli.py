import pytest
from PIL import features

import pixbooster as pb


def test_load_toml_config(tmp_path):
    cfg = tmp_path / "config.toml"
    cfg.write_text('marker = "px"\n[avif]\nspeed = 6\n')
    assert pb.load_config_file(str(cfg)) == {"marker": "px", "avif": {"speed": 6}}


def test_load_yaml_config(tmp_path):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("cache:\n  storage: /var/cache/px\n  cache_backend: dbm\n")
    assert pb.load_config_file(str(cfg)) == {
        "cache": {"storage": "/var/cache/px", "cache_backend": "dbm"}
    }


def test_yaml_must_be_a_mapping(tmp_path):
    cfg = tmp_path / "config.yml"
    cfg.write_text("- a\n- b\n")
    with pytest.raises(pb.ConfigError):
        pb.load_config_file(str(cfg))


def test_invalid_toml(tmp_path):
    cfg = tmp_path / "config.toml"
    cfg.write_text("marker = \n")
    with pytest.raises(pb.ConfigError):
        pb.load_config_file(str(cfg))


def test_unsupported_config_format(tmp_path):
    cfg = tmp_path / "config.ini"
    cfg.write_text("[x]\n")
    with pytest.raises(pb.ConfigError):
        pb.load_config_file(str(cfg))


def test_flatten_config():
    cfg = {
        "marker": "px",
        "general": {"verbose": True},
        "formats": {"no_jxl": True},
        "cache": {"storage": "/tmp/px"},
        "fetch": {"timeout": 3.5},
        "webp": {"quality": 70, "lossless": True},
        "avif": {"speed": 5},
        "jxl": {"effort": 9},
    }
    assert pb.flatten_config(cfg) == {
        "marker": "px",
        "verbose": True,
        "no_jxl": True,
        "storage": "/tmp/px",
        "timeout": 3.5,
        "webp_quality": 70,
        "webp_lossless": True,
        "avif_speed": 5,
        "jxl_effort": 9,
    }


def test_config_supplies_defaults_and_cli_wins(tmp_path):
    cfg = tmp_path / "config.toml"
    cfg.write_text(
        'marker = "px"\n'
        "[formats]\nno_avif = true\n"
        "[webp]\nquality = 70\n"
        '[cache]\ncache_backend = "mem"\n'
    )
    args = pb.parse_args(
        ["--config", str(cfg), "--webp-quality", "80", "rewrite", "page.html"]
    )
    settings = pb.settings_from_args(args)
    assert settings.marker == "px"
    assert settings.avif_output is False
    assert settings.webp.quality == 80
    assert settings.cache_backend == "mem"
    assert args.command == "rewrite"
    assert args.site_host == "localhost"


def test_settings_from_args_defaults():
    settings = pb.settings_from_args(pb.parse_args(["rewrite", "page.html"]))
    assert settings == pb.Settings()


def test_settings_from_args_maps_flags():
    args = pb.parse_args(
        [
            "--no-png",
            "--no-jxl",
            "--quality",
            "55",
            "--avif-speed",
            "8",
            "--jxl-effort",
            "3",
            "--webp-lossless",
            "--storage",
            "/srv/cache",
            "--origin",
            "http://backend:9000",
            "serve",
            "site",
            "--port",
            "9090",
        ]
    )
    settings = pb.settings_from_args(args)
    assert settings.png_input is False
    assert settings.jxl_output is False
    assert settings.quality == 55
    assert settings.avif == pb.AvifOptions(speed=8)
    assert settings.jxl == pb.JxlOptions(effort=3)
    assert settings.webp.lossless is True
    assert settings.storage == "/srv/cache"
    assert settings.origin == "http://backend:9000"
    assert args.port == 9090


def test_missing_subcommand_is_usage_error():
    with pytest.raises(SystemExit) as exc_info:
        pb.parse_args([])
    assert exc_info.value.code == 2


def test_invalid_quality_exits_with_error(tmp_path, caplog):
    page = tmp_path / "page.html"
    page.write_text('<img src="a.jpg">')
    with pytest.raises(SystemExit) as exc_info:
        pb.main(["--quality", "150", "rewrite", str(page)])
    assert exc_info.value.code == 1
    assert "quality" in caplog.text


def test_convert_disabled_format_exits_with_error(tmp_path):
    with pytest.raises(SystemExit) as exc_info:
        pb.main(
            [
                "--no-webp-output",
                "convert",
                "http://example.com/a.png",
                "webp",
                "-o",
                str(tmp_path / "a.webp"),
            ]
        )
    assert exc_info.value.code == 1
    assert not (tmp_path / "a.webp").exists()


@pytest.mark.skipif(not features.check("webp"), reason="Pillow built without WebP")
def test_rewrite_command_writes_file(tmp_path):
    page = tmp_path / "page.html"
    page.write_text(
        '<p><img src="/a.jpg" alt="A"><img src="https://cdn.other.org/b.jpg"></p>'
    )
    out = tmp_path / "out.html"
    pb.main(
        [
            "--marker",
            "px",
            "--no-avif",
            "--no-jxl",
            "rewrite",
            str(page),
            "--site-host",
            "example.com",
            "-o",
            str(out),
        ]
    )
    assert out.read_text() == (
        "<p><picture>"
        '<source srcset="/a.jpg.px.webp" type="image/webp"/>'
        '<img src="/a.jpg" alt="A"/>'
        "</picture>"
        '<img src="https://cdn.other.org/b.jpg"/></p>'
    )
