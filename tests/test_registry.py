import asyncio
import io

import pytest
from bs4 import BeautifulSoup

from texexport.annotations import detect_image_references
from texexport.registry import (
    ATTR_MANAGED,
    ATTR_ORIGINAL_SRC,
    LONGDESC_CLASS,
    DecodedImage,
    EncodingResult,
    ImageDecodeError,
    ImageSession,
    PillowRasterBackend,
    PreviewUrlStore,
    choose_smaller_encoding,
    find_matching_reference,
    generate_longdesc_id,
)


class _FakeBackend:
    def __init__(self, png_payload: str = "AAAA", webp_payload: str = "B" * 64) -> None:
        self.png_payload = png_payload
        self.webp_payload = webp_payload
        self.decoded = 0

    def decode(self, data):
        if data == b"corrupt":
            raise ImageDecodeError("Unable to decode image: corrupt")
        self.decoded += 1
        return DecodedImage(width=4, height=3, image=None)

    def encode(self, decoded):
        return [
            EncodingResult("png", "image/png", f"data:image/png;base64,{self.png_payload}", True),
            EncodingResult("webp", "image/webp", f"data:image/webp;base64,{self.webp_payload}", False),
        ]


def _make_png_bytes(width: int = 32, height: int = 32, mode: str = "RGB") -> bytes:
    from PIL import Image

    color = (200, 10, 10, 128) if mode == "RGBA" else (200, 10, 10)
    buffer = io.BytesIO()
    Image.new(mode, (width, height), color=color).save(buffer, format="PNG")
    return buffer.getvalue()


def _make_session(source: str, **kwargs) -> ImageSession:
    session = ImageSession(backend=kwargs.pop("backend", _FakeBackend()), **kwargs)
    session.parse(source)
    return session


def _register(session: ImageSession, filename: str, data: bytes = b"pixels"):
    return asyncio.run(session.register_image(filename, data))


def _imgs(markup: str):
    return BeautifulSoup(markup, "html.parser").find_all("img")


def test_choose_smaller_encoding_prefers_smallest_then_lossless():
    png = EncodingResult("png", "image/png", "data:image/png;base64,AAAA", True)
    webp = EncodingResult("webp", "image/webp", "data:image/webp;base64,AAAAAAAAAAAAAAAAAAAAAA", False)
    assert choose_smaller_encoding([webp, png]).format == "png"

    tie_png = EncodingResult("png", "image/png", "x" * 10, True)
    tie_webp = EncodingResult("webp", "image/webp", "y" * 10, False)
    assert choose_smaller_encoding([tie_webp, tie_png]).format == "png"

    with pytest.raises(ValueError):
        choose_smaller_encoding([])


def test_register_chooses_lossless_when_smaller():
    session = _make_session("\\includegraphics{flat.png}")
    entry = _register(session, "flat.png")
    assert entry.format == "png"
    assert entry.mime_type == "image/png"
    assert entry.data_url == "data:image/png;base64,AAAA"
    assert (entry.width, entry.height) == (4, 3)
    assert entry.preview_url.startswith("blob:")
    assert entry.preview_url in session.previews


def test_register_chooses_lossy_when_smaller():
    session = _make_session("", backend=_FakeBackend(png_payload="A" * 200, webp_payload="B"))
    assert _register(session, "photo.jpg").format == "webp"


def test_pillow_backend_encodes_real_images():
    session = _make_session("\\includegraphics{red.png}", backend=PillowRasterBackend(80))
    entry = _register(session, "red.png", _make_png_bytes(40, 20))
    assert (entry.width, entry.height) == (40, 20)
    assert entry.format in {"png", "webp"}
    assert entry.data_url.startswith(f"data:{entry.mime_type};base64,")
    assert entry.encoded_size == len(entry.data_url)


def test_pillow_backend_keeps_alpha():
    decoded = PillowRasterBackend().decode(_make_png_bytes(8, 8, mode="RGBA"))
    assert decoded.image.mode == "RGBA"
    results = PillowRasterBackend().encode(decoded)
    assert results[0].format == "png"
    assert results[0].lossless is True


@pytest.mark.parametrize("payload", [b"", b"definitely not an image"])
def test_pillow_backend_rejects_undecodable_data(payload):
    with pytest.raises(ImageDecodeError):
        PillowRasterBackend().decode(payload)


def test_failed_registration_leaves_registry_untouched():
    events = []
    session = _make_session("\\includegraphics{bad.png}", notifier=lambda level, msg: events.append((level, msg)))
    _register(session, "bad.png")
    good_url = session.get_image("bad.png").preview_url

    with pytest.raises(ImageDecodeError):
        _register(session, "bad.png", b"corrupt")

    assert session.get_image("bad.png").preview_url == good_url
    assert good_url in session.previews
    assert events[-1][0] == "error"
    assert "bad.png" in events[-1][1]


def test_reregistering_revokes_previous_preview_url():
    session = _make_session("\\includegraphics{a.png}")
    first = _register(session, "a.png")
    second = _register(session, "a.png")
    assert first.preview_url != second.preview_url
    assert first.preview_url not in session.previews
    assert second.preview_url in session.previews
    assert session.image_count == 1


def test_concurrent_registration_of_distinct_files():
    session = _make_session("\\includegraphics{a.png}\n\\includegraphics{b.png}")

    async def _both():
        return await asyncio.gather(
            session.register_image("a.png", b"one"),
            session.register_image("b.png", b"two"),
        )

    entries = asyncio.run(_both())
    assert [e.filename for e in entries] == ["a.png", "b.png"]
    assert session.all_images_available()


def test_remove_clear_and_dispose_revoke_urls():
    session = _make_session("\\includegraphics{a.png}\n\\includegraphics{b.png}")
    a = _register(session, "a.png")
    b = _register(session, "b.png")

    assert session.has_image("a.png") is True
    assert session.remove_image("a.png") is True
    assert session.has_image("a.png") is False
    assert session.remove_image("a.png") is False
    assert a.preview_url not in session.previews
    assert [ref.filename for ref in session.get_missing_images()] == ["a.png"]

    session.clear_registry()
    assert b.preview_url not in session.previews
    assert session.image_count == 0

    _register(session, "a.png")
    session.dispose()
    assert len(session.previews) == 0
    assert session.references == []


def test_missing_images_against_explicit_source():
    session = _make_session("")
    _register(session, "a.png")
    source = "\\includegraphics{a.png}\n\\includegraphics{b.png}"
    assert [ref.filename for ref in session.get_missing_images(source)] == ["b.png"]
    assert session.all_images_available(source) is False
    assert session.all_images_available("\\includegraphics{a.png}") is True


def test_accessibility_report_shape():
    session = _make_session("% @alt: A red triangle\n\\includegraphics{shape.png}\n")
    report = session.get_accessibility_report()
    assert report == [
        {"filename": "shape.png", "level": "good", "message": "Has explicit alt text", "warnings": []}
    ]


def test_export_applies_decorative_then_alt_for_reused_filename():
    source = (
        "% @decorative\n\\includegraphics{shape.png}\n"
        "Text between.\n"
        "% @alt: Triangle diagram\n\\includegraphics{shape.png}\n"
    )
    session = _make_session(source)
    _register(session, "shape.png")

    html = '<p><img src="shape.png" alt="shape"/></p><p><img src="shape.png" alt="shape"/></p>'
    first, second = _imgs(session.replace_images_for_export(html))

    assert first["alt"] == ""
    assert first["role"] == "presentation"
    assert second["alt"] == "Triangle diagram"
    assert "role" not in second.attrs
    assert first["src"].startswith("data:image/")
    assert session.last_report.replaced == 2


def test_decorative_wins_over_alt_and_caption():
    source = (
        "\\begin{figure}\n% @decorative\n% @alt: Not used\n"
        "\\includegraphics{deco.png}\n\\caption{A caption}\n\\end{figure}\n"
    )
    session = _make_session(source)
    _register(session, "deco.png")
    (img,) = _imgs(session.replace_images_for_export('<img src="deco.png" alt="A caption"/>'))
    assert img["alt"] == ""
    assert img["role"] == "presentation"


def test_overflow_images_keep_upstream_attributes():
    session = _make_session("% @alt: Only once\n\\includegraphics{x.png}\n")
    _register(session, "x.png")

    html = '<img src="x.png" alt="upstream one"/><img src="x.png" alt="upstream two"/>'
    first, second = _imgs(session.replace_images_for_export(html))

    assert first["alt"] == "Only once"
    assert second["alt"] == "upstream two"
    assert second["src"].startswith("data:")
    assert any("existing attributes kept" in w for w in session.last_report.warnings)


def test_each_pass_restarts_occurrence_counters():
    session = _make_session("% @alt: Once\n\\includegraphics{x.png}\n")
    _register(session, "x.png")
    for _ in range(2):
        (img,) = _imgs(session.replace_images_for_export('<img src="x.png" alt=""/>'))
        assert img["alt"] == "Once"


def test_caption_and_generic_fallbacks_are_reported():
    source = (
        "\\begin{figure}\n\\includegraphics{cap.png}\n\\caption{Quarterly sales}\n\\end{figure}\n"
        "\\begin{figure}\n\\includegraphics{kept.png}\n\\caption{Ignored caption}\n\\end{figure}\n"
        "\\includegraphics{bare.png}\n"
    )
    session = _make_session(source)
    for name in ("cap.png", "kept.png", "bare.png"):
        _register(session, name)

    html = '<img src="cap.png" alt=""/><img src="kept.png" alt="Converter alt"/><img src="bare.png" alt="image"/>'
    cap, kept, bare = _imgs(session.replace_images_for_export(html))

    assert cap["alt"] == "Quarterly sales"
    assert kept["alt"] == "Converter alt"
    assert bare["alt"] == "Image: bare.png"
    warnings = session.last_report.warnings
    assert any("using caption text as fallback" in w for w in warnings)
    assert any("keeping converter alt text" in w for w in warnings)
    assert any("using generic fallback" in w for w in warnings)


def test_unregistered_images_are_left_unchanged_and_reported():
    session = _make_session("\\includegraphics{a.png}\n\\includegraphics{b.png}")
    _register(session, "a.png")
    html = '<img src="a.png"/><img src="b.png" alt="b"/><img src="data:image/png;base64,AA"/>'
    a, b, inline = _imgs(session.replace_images_for_export(html))
    assert a["src"].startswith("data:image/png")
    assert b["src"] == "b.png"
    assert inline["src"] == "data:image/png;base64,AA"
    assert session.last_report.missing == ["b.png"]


def test_export_without_registry_returns_markup_unchanged():
    session = _make_session("\\includegraphics{a.png}")
    html = '<p><img src="a.png" alt="a"></p>'
    assert session.replace_images_for_export(html) == html
    assert session.replace_images_for_export("") == ""


def test_export_resolves_by_basename():
    session = _make_session("% @alt: Nested\n\\includegraphics{figures/deep.png}\n")
    _register(session, "figures/deep.png")
    (img,) = _imgs(session.replace_images_for_export('<img src="deep.png"/>'))
    assert img["alt"] == "Nested"
    assert img["src"].startswith("data:")


def test_long_description_injected_after_figure_once():
    source = (
        "\\begin{figure}\n% @alt: Bar chart\n% @longdesc: Sales rose\n% @longdesc: every quarter.\n"
        "\\includegraphics{chart.png}\n\\caption{Sales}\n\\end{figure}\n"
    )
    session = _make_session(source)
    _register(session, "chart.png")

    html = '<figure><img src="chart.png"/><figcaption>Sales</figcaption></figure><p>After</p>'
    tree = BeautifulSoup(html, "html.parser")
    assert session.replace_images_for_preview(tree) == 1
    exported = BeautifulSoup(session.replace_images_for_export(str(tree)), "html.parser")

    desc_id = generate_longdesc_id("chart.png", 1)
    assert desc_id == "longdesc-chart-png-1"
    img = exported.find("img")
    assert img["aria-describedby"] == desc_id
    blocks = exported.find_all("div", class_=LONGDESC_CLASS)
    assert len(blocks) == 1
    block = blocks[0]
    assert block["id"] == desc_id
    assert block["role"] == "note"
    assert block.find("summary").get_text() == "Image description"
    assert block.find("p").get_text() == "Sales rose every quarter."
    assert exported.find("figure").find_next_sibling("div") is block


def test_long_description_label_override():
    source = "% @alt: Map\n% @longdesc: Rivers and roads.\n\\includegraphics{map.png}\n"
    session = _make_session(source, labels={"longdesc_summary": "Beschreibung"})
    _register(session, "map.png")
    exported = BeautifulSoup(session.replace_images_for_export('<p><img src="map.png"/></p>'), "html.parser")
    assert exported.find("summary").get_text() == "Beschreibung"
    assert exported.find("img").find_next_sibling("div")["id"] == "longdesc-map-png-1"


def test_preview_then_export_strips_bookkeeping_attributes():
    session = _make_session("% @alt: Dot\n\\includegraphics{dot.png}\n")
    entry = _register(session, "dot.png")
    tree = BeautifulSoup('<p><img src="dot.png" alt=""/></p>', "html.parser")

    assert session.replace_images_for_preview(tree) == 1
    img = tree.find("img")
    assert img["src"] == entry.preview_url
    assert img[ATTR_MANAGED] == "true"
    assert img[ATTR_ORIGINAL_SRC] == "dot.png"
    assert img["alt"] == "Dot"

    # a second preview pass resolves through the original source
    assert session.replace_images_for_preview(tree) == 1

    (exported,) = _imgs(session.replace_images_for_export(tree))
    assert exported["src"] == entry.data_url
    assert ATTR_MANAGED not in exported.attrs
    assert ATTR_ORIGINAL_SRC not in exported.attrs
    # the preview tree itself is untouched by the export pass
    assert tree.find("img")["src"] == entry.preview_url


def test_preview_without_registry_is_noop():
    session = _make_session("\\includegraphics{a.png}")
    tree = BeautifulSoup('<img src="a.png"/>', "html.parser")
    assert session.replace_images_for_preview(tree) == 0
    assert tree.find("img")["src"] == "a.png"


def test_notifier_receives_success_and_failures_do_not_propagate():
    events = []

    def _notifier(level, message):
        events.append(level)
        raise RuntimeError("sink down")

    session = _make_session("\\includegraphics{a.png}", notifier=_notifier)
    _register(session, "a.png")
    session.replace_images_for_export('<img src="a.png"/>')
    assert "info" in events
    assert "success" in events


def test_find_matching_reference_tiers():
    refs = detect_image_references(
        "\\includegraphics{Figures/Plot.PNG}\n\\includegraphics{other/logo.png}\n\\includegraphics{diagram}\n"
    )
    assert find_matching_reference("figures/plot.png", refs).filename == "Figures/Plot.PNG"
    assert find_matching_reference("logo.png", refs).filename == "other/logo.png"
    assert find_matching_reference("diagram.pdf", refs).filename == "diagram"
    assert find_matching_reference("unknown.png", refs) is None


def test_preview_url_store_lifecycle():
    store = PreviewUrlStore("ns")
    url = store.create(b"abc")
    assert url.startswith("blob:texexport/ns/")
    assert store.resolve(url) == b"abc"
    assert store.revoke(url) is True
    assert store.revoke(url) is False
    assert store.revoke(None) is False
    store.create(b"1")
    store.create(b"2")
    assert store.revoke_all() == 2
    assert len(store) == 0


def test_registry_info_reports_dimensions():
    session = _make_session("\\includegraphics{a.png}")
    _register(session, "a.png")
    info = session.get_registry_info()
    assert info["a.png"]["dimensions"] == "4x3"
    assert info["a.png"]["format"] == "png"
    assert info["a.png"]["has_preview_url"] is True
