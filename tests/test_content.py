from datetime import datetime, timezone
from pathlib import Path

from stheno.content import ContentProcessor, FileContentLoader, LayoutResolver, UrlDeriver
from stheno.extractors import (
    CacheMetadataExtractor,
    CompositeMetadataExtractor,
    TagExtractor,
    TitleExtractor,
    extract_frontmatter,
    parse_published_at,
)
from stheno.protocols import ContentLoader, ContentRenderer, MetadataExtractor, PageBuilder
from stheno.renderers import MarkdownRenderer, create_renderer_registry


def registry():
    return create_renderer_registry(["markdown", "jinja", "html"])


def create_site(tmp_path: Path) -> Path:
    site = tmp_path / "site"
    (site / "_layouts").mkdir(parents=True)
    (site / "_partials").mkdir()
    (site / "posts").mkdir()
    (site / "pages").mkdir()
    (site / "_hidden").mkdir()
    (site / "_partials" / "header.html.jinja").write_text("header", encoding="utf-8")
    (site / "_layouts" / "default.html.jinja").write_text("{{ page_content }}", encoding="utf-8")

    (site / "index.md").write_text(
        "# Home Page\n\nWelcome to the #web frontend.\n", encoding="utf-8"
    )
    (site / "pages" / "about.md").write_text("# About Us", encoding="utf-8")
    (site / "pages" / "index.md").write_text("# Pages Index", encoding="utf-8")
    (site / "posts" / "2024-01-15-my-post.md").write_text(
        "# Post Title\n\nBody text #python", encoding="utf-8"
    )
    (site / "posts" / "_draft.md").write_text("# Draft", encoding="utf-8")
    (site / "contact.html.jinja").write_text("<h1>{{ data.title }}</h1>", encoding="utf-8")
    (site / "_hidden" / "secret.md").write_text("# Secret", encoding="utf-8")
    (site / "notes.txt").write_text("ignore", encoding="utf-8")
    return site


def test_content_processing_builds_pages(tmp_path):
    site = create_site(tmp_path)
    pages = ContentProcessor(site, registry(), project_root=tmp_path).load()
    urls = [p.url for p in pages]
    assert urls == sorted(urls)
    assert set(urls) == {"/", "/contact/", "/pages/", "/pages/about/", "/posts/my-post/"}

    home = next(p for p in pages if p.url == "/")
    assert home.title == "Home Page"
    assert home.tags == ["web"]
    assert home.group == ""
    assert home.layout == "default"
    assert home.source_path == "site/index.md"
    assert home.content == ""
    assert home.content_hash.startswith("sha256-")

    post = next(p for p in pages if p.group == "posts")
    assert post.slug == "my-post"
    assert post.date == datetime(2024, 1, 15, tzinfo=timezone.utc)
    assert post.published_at is None

    contact = next(p for p in pages if p.url == "/contact/")
    assert contact.source_type == "jinja"


def test_drafts_only_with_flag(tmp_path):
    site = create_site(tmp_path)
    (site / "posts" / "hidden.md").write_text("---\ndraft: true\n---\n# Hidden", encoding="utf-8")
    processor = ContentProcessor(site, registry(), project_root=tmp_path)
    assert not any(p.draft for p in processor.load())
    drafts = [p for p in processor.load(include_drafts=True) if p.draft]
    assert {p.filename for p in drafts} == {"_draft.md", "hidden.md"}


def test_unreadable_source_is_recorded_and_skipped(tmp_path, caplog):
    site = create_site(tmp_path)
    (site / "pages" / "latin1.md").write_bytes(b"# Caf\xe9 \xff\xfe")
    processor = ContentProcessor(site, registry(), project_root=tmp_path)
    pages = processor.load()
    assert "/pages/latin1/" not in {p.url for p in pages}
    assert "/pages/about/" in {p.url for p in pages}
    assert [e.source_path.name for e in processor.errors] == ["latin1.md"]
    assert "Cannot read" in caplog.text

    (site / "pages" / "latin1.md").write_text("# Cafe", encoding="utf-8")
    processor.load()
    assert processor.errors == []


def test_loader_skips_internal_folders_and_unknown_types(tmp_path):
    site = create_site(tmp_path)
    files = FileContentLoader(site, registry()).iter_files()
    names = {path.name for path in files}
    assert "secret.md" not in names
    assert "header.html.jinja" not in names
    assert "notes.txt" not in names


def test_renderer_list_limits_discovery(tmp_path):
    site = create_site(tmp_path)
    pages = ContentProcessor(site, create_renderer_registry(["markdown"]), project_root=tmp_path).load()
    assert all(p.source_type == "markdown" for p in pages)
    assert "/contact/" not in {p.url for p in pages}


def test_duplicate_url_keeps_first_source(tmp_path, caplog):
    site = create_site(tmp_path)
    (site / "pages" / "about.html").write_text("<p>html about</p>", encoding="utf-8")
    with caplog.at_level("WARNING"):
        pages = ContentProcessor(site, registry(), project_root=tmp_path).load()
    about = [p for p in pages if p.url == "/pages/about/"]
    assert len(about) == 1
    assert about[0].filename == "about.html"
    assert "already produced by" in caplog.text


def test_layout_resolution_specificity(tmp_path):
    site = create_site(tmp_path)
    layouts = site / "_layouts"
    (layouts / "posts.html.jinja").write_text("posts {{ page_content }}", encoding="utf-8")
    (layouts / "pages").mkdir()
    (layouts / "pages" / "about.html.jinja").write_text("about {{ page_content }}", encoding="utf-8")
    (site / "pages" / "custom.md").write_text("---\nlayout: special\n---\nBody", encoding="utf-8")

    pages = {p.url: p for p in ContentProcessor(site, registry(), project_root=tmp_path).load()}
    assert pages["/posts/my-post/"].layout == "posts"
    assert pages["/pages/about/"].layout == "pages/about"
    assert pages["/pages/"].layout == "default"
    assert pages["/pages/custom/"].layout == "special"


def test_layout_template_name_suffixes(tmp_path):
    site = create_site(tmp_path)
    (site / "_layouts" / "plain.html").write_text("x", encoding="utf-8")
    resolver = LayoutResolver(site)
    assert resolver.template_name("default") == "default.html.jinja"
    assert resolver.template_name("plain") == "plain.html"
    assert resolver.template_name("missing") is None


def test_url_derivation():
    deriver = UrlDeriver()
    assert deriver.derive(Path("index.md"), "index") == "/"
    assert deriver.derive(Path("docs/index.md"), "index") == "/docs/"
    assert deriver.derive(Path("docs/guide/setup.md"), "setup") == "/docs/guide/setup/"


def test_content_hash_ignores_frontmatter_key_order(tmp_path):
    site = create_site(tmp_path)
    page_path = site / "pages" / "about.md"
    processor = ContentProcessor(site, registry(), project_root=tmp_path)

    page_path.write_text("---\ntitle: A\ntags: [x]\n---\nBody", encoding="utf-8")
    first = next(p for p in processor.load() if p.url == "/pages/about/").content_hash
    page_path.write_text("---\ntags: [x]\ntitle: A\n---\nBody", encoding="utf-8")
    second = next(p for p in processor.load() if p.url == "/pages/about/").content_hash
    page_path.write_text("---\ntags: [y]\ntitle: A\n---\nBody", encoding="utf-8")
    third = next(p for p in processor.load() if p.url == "/pages/about/").content_hash
    assert first == second
    assert third != first


def test_render_content_markdown(tmp_path):
    site = create_site(tmp_path)
    processor = ContentProcessor(site, registry(), project_root=tmp_path)
    home = next(p for p in processor.load() if p.url == "/")
    processor.render_content(home)
    assert '<h1 id="home-page">Home Page</h1>' in home.content
    assert "Welcome to the web frontend." in home.content
    assert [h.id for h in home.toc] == ["home-page"]


def test_cache_frontmatter_fields(tmp_path):
    site = create_site(tmp_path)
    (site / "posts" / "cached.md").write_text(
        "---\npublishedAt: 2024-03-01T10:00:00Z\nttlSeconds: 120\nmaxAgeCapDays: 90\n---\nBody",
        encoding="utf-8",
    )
    pages = {p.url: p for p in ContentProcessor(site, registry(), project_root=tmp_path).load()}
    page = pages["/posts/cached/"]
    assert page.published_at == datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)
    assert page.date == page.published_at
    assert page.ttl_seconds == 120
    assert page.max_age_cap_days == 90


def test_cache_metadata_ignores_invalid_values(tmp_path, caplog):
    path = tmp_path / "page.md"
    text = "---\npublished: not a date\ndate: 2024-02-02\nttlSeconds: -5\nmaxAgeCapDays: soon\n---\n"
    with caplog.at_level("WARNING"):
        result = CacheMetadataExtractor().extract(text, path)
    assert result["published_at"] == datetime(2024, 2, 2, tzinfo=timezone.utc)
    assert result["ttl_seconds"] is None
    assert result["max_age_cap_days"] is None
    assert "ttlSeconds must be a non-negative integer" in caplog.text


def test_parse_published_at_forms():
    assert parse_published_at("2024-01-02") == datetime(2024, 1, 2, tzinfo=timezone.utc)
    assert parse_published_at("2024-01-02T03:04:05+02:00") == datetime(2024, 1, 2, 1, 4, 5, tzinfo=timezone.utc)
    assert parse_published_at("yesterday") is None
    assert parse_published_at(42) is None


def test_frontmatter_edge_cases(caplog):
    assert extract_frontmatter("no frontmatter") == ({}, "no frontmatter")
    assert extract_frontmatter("---\n- a\n- b\n---\nBody") == ({}, "---\n- a\n- b\n---\nBody")
    with caplog.at_level("WARNING"):
        data, _ = extract_frontmatter("---\ntitle: [unclosed\n---\nBody")
    assert data == {}
    assert "Ignoring invalid frontmatter" in caplog.text


def test_title_and_tag_extractors(tmp_path):
    path = tmp_path / "2024-05-01-some-post.md"
    assert TitleExtractor().extract("---\ntitle: Given\n---\n# Heading", path)["title"] == "Given"
    assert TitleExtractor().extract("# Heading\n\ntext", path)["title"] == "Heading"
    assert TitleExtractor().extract("text only", path)["title"] == "Some Post"
    tags = TagExtractor().extract('---\ntags: "news, #web"\n---\nText #python #web', path)["tags"]
    assert tags == ["news", "web", "python"]


def test_composite_extractor_accepts_extra_extractors(tmp_path):
    class WordCount:
        def extract(self, content, path):
            return {"words": len(content.split())}

    extractor = CompositeMetadataExtractor([])
    extractor.add_extractor(WordCount())
    assert extractor.extract("one two three", tmp_path / "x.md") == {"words": 3}
    assert isinstance(WordCount(), MetadataExtractor)


def test_code_highlighting():
    html, _ = MarkdownRenderer().render("```python\nprint('hi')\n```\n", "")
    assert 'class="highlight"' in html
    html, _ = MarkdownRenderer().render("```nosuchlang\n<b>x</b>\n```\n", "")
    assert '<pre><code class="language-nosuchlang">&lt;b&gt;x&lt;/b&gt;' in html


def test_duplicate_headings_get_unique_ids():
    _, headings = MarkdownRenderer().render("## Intro\n\n## Intro\n", "")
    assert [h.id for h in headings] == ["intro", "intro-1"]


def test_default_components_satisfy_protocols(tmp_path):
    site = create_site(tmp_path)
    processor = ContentProcessor(site, registry(), project_root=tmp_path)
    assert isinstance(processor._content_loader, ContentLoader)
    assert isinstance(processor._page_builder, PageBuilder)
    assert isinstance(MarkdownRenderer(), ContentRenderer)
