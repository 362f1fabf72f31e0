import logging
from datetime import datetime
from pathlib import Path

from stheno import utils
from stheno.log import configure_logging


def test_slugify_and_titleize_strip_date_and_suffixes():
    assert utils.slugify("2024-01-02-post-title") == "post-title"
    assert utils.slugify("contact[form]") == "contact-form"
    assert utils.slugify("Mixed Case Slug") == "mixed-case-slug"
    assert utils.slugify("!!!") == "index"
    assert utils.titleize("2024-01-02-post-title.md") == "Post Title"
    assert utils.titleize("contact.html.jinja") == "Contact"
    assert utils.titleize("mixed_case-slug.md") == "Mixed Case Slug"


def test_source_stem_drops_all_source_suffixes():
    assert utils.source_stem(Path("about.html.jinja")) == "about"
    assert utils.source_stem(Path("page.html")) == "page"
    assert utils.source_stem(Path("notes.md")) == "notes"
    assert utils.source_stem(Path("posts/2024-01-01-x.md")) == "2024-01-01-x"
    assert utils.source_stem(Path(".md")) == ".md"


def test_extract_date_tags_and_strip():
    assert utils.extract_date_from_name("2024-01-15-cool") == datetime(2024, 1, 15)
    assert utils.extract_date_from_name("invalid") is None
    assert utils.extract_date_from_name("2024-13-32-post") is None

    text = "Talking about #python and #web/frontend plus #python again, not #ab."
    assert utils.extract_tags(text) == ["python", "web/frontend"]
    assert utils.strip_hashtags(text).startswith("Talking about python and web/frontend")


def test_first_paragraph():
    text = "# Heading <b>bold</b> {{ var }}\n\nSecond paragraph."
    assert utils.first_paragraph(text) == "Heading bold"
    assert utils.first_paragraph("a" * 300, limit=10) == "a" * 10
    assert utils.first_paragraph("") == ""


def test_source_type_checks():
    assert utils.is_markdown(Path("page.MD"))
    assert utils.is_template(Path("index.html.jinja"))
    assert utils.is_template(Path("feed.jinja"))
    assert utils.is_html(Path("404.html"))
    assert not utils.is_html(Path("page.html.jinja"))
    assert not utils.is_html(Path("page.md"))


def test_number_prefixes():
    assert utils.extract_number_from_name("01-intro") == 1
    assert utils.extract_number_from_name("2024-01-01-03-setup") == 3
    assert utils.extract_number_from_name("intro") is None
    assert utils.strip_number_prefix("01-intro") == "intro"
    assert utils.strip_number_prefix("2024-01-01-03-setup") == "setup"
    assert utils.strip_number_prefix("plain") == "plain"


def test_build_tags_index_keeps_page_order():
    class Page:
        def __init__(self, name, tags):
            self.name = name
            self.tags = tags

    a, b = Page("a", ["python", "web"]), Page("b", ["python"])
    index = utils.build_tags_index([a, b])
    assert index == {"python": [a, b], "web": [a]}


def test_ensure_clean_dir(tmp_path):
    target = tmp_path / "build"
    (target / "nested").mkdir(parents=True)
    (target / "nested" / "old.txt").write_text("old", encoding="utf-8")
    utils.ensure_clean_dir(target)
    assert list(target.iterdir()) == []

    missing = tmp_path / "missing-dir"
    utils.ensure_clean_dir(missing)
    assert missing.is_dir()


def test_output_paths_and_atomic_write(tmp_path):
    out = tmp_path / "output"
    assert utils.output_path_for(out, "/") == out / "index.html"
    assert utils.output_path_for(out, "/posts/a/") == out / "posts" / "a" / "index.html"

    target = utils.output_path_for(out, "/posts/a/")
    utils.atomic_write_text(target, "one")
    utils.atomic_write_text(target, "two")
    assert target.read_text(encoding="utf-8") == "two"
    assert [p.name for p in target.parent.iterdir()] == ["index.html"]


def test_remove_output_page_prunes_empty_directories(tmp_path):
    out = tmp_path / "output"
    utils.atomic_write_text(utils.output_path_for(out, "/"), "home")
    utils.atomic_write_text(utils.output_path_for(out, "/posts/a/"), "a")
    utils.atomic_write_text(utils.output_path_for(out, "/posts/b/"), "b")

    assert utils.remove_output_page(out, "/posts/a/")
    assert not (out / "posts" / "a").exists()
    assert (out / "posts" / "b" / "index.html").exists()

    assert utils.remove_output_page(out, "/posts/b/")
    assert not (out / "posts").exists()
    assert (out / "index.html").exists()
    assert not utils.remove_output_page(out, "/posts/b/")


def test_join_root_url_uses_one_slash():
    assert utils.join_root_url("https://example.com/", "/about/") == "https://example.com/about/"
    assert utils.join_root_url("https://example.com", "about/") == "https://example.com/about/"
    assert utils.join_root_url("", "/about/") == "/about/"


def test_absolutize_html_urls_only_touches_root_relative_links():
    html = (
        '<a href="/about/">A</a><img src=\'/img/logo.png\'><img src="img.png">'
        '<a href="https://other.com/">B</a><a href="//cdn.example.com/x.js">C</a>'
        '<a href="#top">D</a><a href="mailto:x@y.z">E</a><form action="/search">'
    )
    result = utils.absolutize_html_urls(html, "https://example.com/")
    assert 'href="https://example.com/about/"' in result
    assert "src='https://example.com/img/logo.png'" in result
    assert 'action="https://example.com/search"' in result
    assert 'src="img.png"' in result
    assert 'href="https://other.com/"' in result
    assert 'href="//cdn.example.com/x.js"' in result
    assert 'href="#top"' in result
    assert 'href="mailto:x@y.z"' in result
    assert utils.absolutize_html_urls(html, "") == html


def test_configure_logging_installs_one_handler():
    logger = logging.getLogger("stheno")
    try:
        configure_logging("debug")
        configure_logging("DEBUG")
        ours = [h for h in logger.handlers if getattr(h, "_stheno_handler", False)]
        assert len(ours) == 1
        assert logger.level == logging.DEBUG

        configure_logging("nonsense")
        assert logger.level == logging.INFO
        configure_logging(logging.WARNING)
        assert logger.level == logging.WARNING
    finally:
        for handler in list(logger.handlers):
            if getattr(handler, "_stheno_handler", False):
                logger.removeHandler(handler)
        logger.setLevel(logging.NOTSET)
