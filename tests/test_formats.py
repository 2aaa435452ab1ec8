import dataclasses

import pytest

import pixbooster as pb


class TestRegistry:
    def test_destinations_in_priority_order(self, registry):
        assert [f.extension for f in registry.enabled_destinations()] == [
            ".jxl",
            ".avif",
            ".webp",
        ]

    def test_input_allowed_by_extension(self, registry):
        assert registry.is_input_allowed("a.jpg")
        assert registry.is_input_allowed("photo.JPEG")
        assert registry.is_input_allowed("/p/a.png?x=1")
        assert registry.is_input_allowed("https://example.com/a.webp")

    def test_unknown_input_fails_closed(self, registry):
        assert not registry.is_input_allowed("a.gif")
        assert not registry.is_input_allowed("a.avif")
        assert not registry.is_input_allowed("a.jxl")
        assert not registry.is_input_allowed("noextension")
        assert not registry.is_input_allowed("")

    def test_disabled_input(self):
        registry = pb.build_registry(pb.Settings(png_input=False))
        assert not registry.is_input_allowed("a.png")
        assert registry.is_input_allowed("a.jpg")

    def test_unknown_output_fails_closed(self, registry):
        gif = pb.ImageFormat(".gif", "image/gif", pb.DESTINATION)
        assert not registry.is_output_allowed(gif)

    def test_disabled_output(self, fmt):
        registry = pb.build_registry(pb.Settings(jxl_output=False))
        assert not registry.is_output_allowed(fmt(".jxl"))
        assert registry.is_output_allowed(fmt(".avif"))
        assert registry.destination_for_extension(".jxl").enabled is False

    def test_source_for_mime_ignores_parameters_and_case(self, registry):
        assert registry.source_for_mime("image/jpeg; charset=binary").extension == ".jpg"
        assert registry.source_for_mime("IMAGE/PNG").extension == ".png"
        assert registry.source_for_mime("text/html") is None
        assert registry.source_for_mime(None) is None

    def test_missing_encoder_disables_destination(self, settings):
        class NoJxl(pb.Codecs):
            def can_encode(self, fmt):
                return fmt.extension != ".jxl"

            def can_decode(self, fmt):
                return True

        registry = pb.build_registry(settings, NoJxl(settings))
        assert [f.extension for f in registry.enabled_destinations()] == [".avif", ".webp"]

    def test_registry_is_immutable(self, registry):
        with pytest.raises(dataclasses.FrozenInstanceError):
            registry.destinations = ()


class TestSettings:
    def test_defaults(self):
        s = pb.Settings()
        assert s.marker == "pixbooster"
        assert s.cache_backend == "file"
        assert s.storage is None

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"quality": 101},
            {"quality": -1},
            {"webp": pb.WebpOptions(quality=200)},
            {"avif": pb.AvifOptions(speed=11)},
            {"jxl": pb.JxlOptions(effort=-1)},
            {"marker": "a.b"},
            {"marker": ""},
            {"cache_backend": "redis"},
            {"parser": "html5lib"},
            {"timeout": 0},
            {"origin": "ftp://example.com"},
        ],
    )
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(pb.ConfigError):
            pb.Settings(**kwargs)

    def test_settings_are_frozen(self):
        s = pb.Settings()
        with pytest.raises(dataclasses.FrozenInstanceError):
            s.quality = 50
