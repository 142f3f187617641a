import pytest

from newsdesk import ingest
from newsdesk.errors import FetchError
from newsdesk.ingest import PROCESS_ITEM_JOB, check_feed, fetch_article_page, fetch_source, queue_priority
from newsdesk.normalize import extract_page_title
from newsdesk.storage import list_jobs, list_raw_items

RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Stadt</title>
    <item>
      <title>Neue Regeln im Rathaus</title>
      <link>https://example.org/news/1?utm_source=rss</link>
      <description>&lt;p&gt;Die Stadt informiert.&lt;/p&gt;</description>
      <pubDate>Wed, 01 May 2024 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>EILMELDUNG: Sperrung der Innenstadt</title>
      <link>https://example.org/news/2</link>
      <description>Sperrung bis Mitternacht.</description>
    </item>
    <item>
      <title>Ohne Link</title>
    </item>
  </channel>
</rss>
"""

PAGE = """<html><head><title>Unwetter | Stadtportal</title></head><body>
<nav>Startseite</nav>
<article>
  <h1>Unwetter in München</h1>
  <p>Der Deutsche Wetterdienst warnt vor Gewittern.</p>
  <script>track()</script>
  <aside>Werbung</aside>
</article>
<footer>Impressum</footer>
</body></html>
""".encode("utf-8")


def _serve(monkeypatch, status=200, content=RSS, error=None):
    monkeypatch.setattr(ingest, "_fetch_url", lambda *args, **kwargs: (status, content, error))


def test_fetch_source_stores_items_and_enqueues_jobs(conn, make_config, source, monkeypatch):
    _serve(monkeypatch)
    result = fetch_source(conn, make_config(), source)

    assert result.new_item_count == 2
    assert result.skipped_invalid == 1
    items = sorted(list_raw_items(conn), key=lambda item: item.id)
    assert items[0].url == "https://example.org/news/1"
    assert items[0].summary == "Die Stadt informiert."
    assert items[0].published_at.startswith("2024-05-01T10:00:00")
    assert all(item.status == "new" for item in items)

    jobs = list_jobs(conn, job_type=PROCESS_ITEM_JOB)
    assert len(jobs) == 2
    priorities = {job.payload["raw_item_id"]: job.priority for job in jobs}
    assert priorities[items[0].id] == 3
    assert priorities[items[1].id] == 1


def test_refetch_skips_known_urls(conn, make_config, source, monkeypatch):
    _serve(monkeypatch)
    config = make_config()
    fetch_source(conn, config, source)
    second = fetch_source(conn, config, source)
    assert second.new_item_count == 0
    assert second.skipped_duplicates == 2
    assert len(list_jobs(conn, job_type=PROCESS_ITEM_JOB)) == 2


def test_http_error_raises_fetch_error(conn, make_config, source, monkeypatch):
    _serve(monkeypatch, status=503, content=None, error="HTTP Error 503")
    with pytest.raises(FetchError) as excinfo:
        fetch_source(conn, make_config(), source)
    assert excinfo.value.source_id == source.id
    assert excinfo.value.http_status == 503


def test_unparseable_feed_raises_fetch_error(conn, make_config, source, monkeypatch):
    _serve(monkeypatch, content=b"<html><body>not a feed")
    with pytest.raises(FetchError):
        fetch_source(conn, make_config(), source)


def test_queue_priority_by_category_and_breaking_marker(source):
    assert queue_priority(source, "Neue Regeln") == 3
    assert queue_priority(source, "Breaking: Stromausfall") == 1


def test_check_feed_reports_items_without_storing(conn, make_config, monkeypatch):
    _serve(monkeypatch)
    result = check_feed(make_config(), "https://example.org/feed.xml")

    assert result.success
    assert result.item_count == 2
    assert result.sample["title"] == "Neue Regeln im Rathaus"
    assert result.sample["url"] == "https://example.org/news/1"
    assert list_raw_items(conn) == []


def test_check_feed_failures(make_config, monkeypatch):
    config = make_config()
    assert not check_feed(config, "ftp://example.org/feed").success

    _serve(monkeypatch, content=b"<html><body>Kein Feed</body></html>")
    assert check_feed(config, "https://example.org/").message == "feed is empty or not RSS/Atom"

    _serve(monkeypatch, status=None, content=None, error="timed out")
    assert check_feed(config, "https://example.org/feed").message == "feed could not be fetched: timed out"

    _serve(monkeypatch, status=500, content=b"oops")
    assert check_feed(config, "https://example.org/feed").message == "feed could not be fetched: http_status 500"


def test_fetch_article_page_keeps_article_content(make_config, monkeypatch):
    _serve(monkeypatch, content=PAGE)
    page = fetch_article_page(make_config(), "https://example.org/unwetter")

    assert page.title == "Unwetter in München"
    assert "Wetterdienst warnt" in page.text
    assert "<h1>" in page.html
    assert "track()" not in page.html
    assert "Werbung" not in page.text
    assert "Impressum" not in page.text


def test_fetch_article_page_without_article_raises(make_config, monkeypatch):
    _serve(monkeypatch, content=b"<html><body><p>Nur Text</p></body></html>")
    with pytest.raises(FetchError):
        fetch_article_page(make_config(), "https://example.org/leer")

    _serve(monkeypatch, status=404, content=None, error="HTTP Error 404: Not Found")
    with pytest.raises(FetchError) as excinfo:
        fetch_article_page(make_config(), "https://example.org/weg")
    assert excinfo.value.http_status == 404


def test_page_title_falls_back_to_title_tag():
    html = "<html><head><title>Unwetter | Stadtportal</title></head><body><p>x</p></body></html>"
    assert extract_page_title(html) == "Unwetter | Stadtportal"
    assert extract_page_title("<p>x</p>") == ""
