from __future__ import annotations

import json

import pytest

from scrape_farm.engine import FetchResult
from scrape_farm.errors import ParseError
from scrape_farm.parse import ParseSpec, eval_field, extract_html_items, extract_items, get_by_path


CATALOG_HTML = """
<html>
<head>
  <title>  All products | Books  </title>
  <meta name="description" content="Books to scrape">
</head>
<body>
  <article class="product" data-sku="A-1">
    <h3><a href="/catalogue/a-light/index.html" title="A Light in the Attic">A Light...</a></h3>
    <p class="price">£51.77</p>
    <img src="img/a.jpg">
  </article>
  <article class="product" data-sku="B-2">
    <h3><a href="https://books.example.com/catalogue/b/index.html" title="Tipping the Velvet">Tipping...</a></h3>
    <p class="price">
      £53.74
    </p>
  </article>
</body>
</html>
"""


def _html_result(html: str, url: str = "https://books.example.com/catalogue/page-1.html") -> FetchResult:
    return FetchResult(
        url=url,
        ok=True,
        status=200,
        body=html.encode("utf-8"),
        headers={"Content-Type": "text/html; charset=utf-8"},
        final_url=url,
    )


def test_items_selector_with_fields_and_absolute_links():
    spec = ParseSpec.from_dict(
        {
            "items_selector": "article.product",
            "id_attr": "data-sku",
            "fields": {
                "title": "h3 a::attr(title)",
                "url": "h3 a::attr(href)",
                "price": "p.price",
                "image": "img::attr(src)",
            },
        }
    )
    items = extract_html_items(CATALOG_HTML, spec, base_url="https://books.example.com/catalogue/page-1.html")
    assert len(items) == 2

    a, b = items
    assert a["id"] == "A-1"
    assert a["title"] == "A Light in the Attic"
    assert a["url"] == "https://books.example.com/catalogue/a-light/index.html"
    assert a["price"] == "£51.77"
    assert a["image"] == "https://books.example.com/catalogue/img/a.jpg"

    assert b["price"] == "£53.74"
    assert b["image"] is None


def test_page_mode_without_selector():
    spec = ParseSpec.from_dict({"fields": {"first_price": "p.price::text"}})
    items = extract_items(_html_result(CATALOG_HTML), spec)
    assert items == [
        {
            "url": "https://books.example.com/catalogue/page-1.html",
            "title": "All products | Books",
            "meta_description": "Books to scrape",
            "links_count": 2,
            "first_price": "£51.77",
        }
    ]


def test_item_itself_text_and_attr():
    spec = ParseSpec(items_selector="p.price", fields={"text": "::text", "cls": "::attr(class)"})
    items = extract_html_items(CATALOG_HTML, spec)
    assert [x["text"] for x in items] == ["£51.77", "£53.74"]
    assert items[0]["cls"] == "price"


def test_bad_selector_is_parse_error():
    spec = ParseSpec(items_selector="article[")
    with pytest.raises(ParseError):
        extract_html_items(CATALOG_HTML, spec)

    from bs4 import BeautifulSoup

    soup = BeautifulSoup("<p>x</p>", "html.parser")
    with pytest.raises(ParseError):
        eval_field(soup, "p[::text")


def test_json_mode_items_path():
    body = json.dumps({"data": {"results": [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}, 3]}}).encode("utf-8")
    res = FetchResult(url="https://api.example.com/x", ok=True, status=200, body=body,
                      headers={"Content-Type": "application/json"})
    spec = ParseSpec.from_dict({"mode": "json", "items_path": "data.results"})
    items = extract_items(res, spec)
    assert items == [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}, {"value": 3}]


def test_json_mode_errors():
    res = FetchResult(url="https://api.example.com/x", ok=True, status=200, body=b'{"data": {}}',
                      headers={"Content-Type": "application/json"})
    with pytest.raises(ParseError):
        extract_items(res, ParseSpec(mode="json", items_path="data.results"))

    broken = FetchResult(url="https://api.example.com/x", ok=True, status=200, body=b"<html>",
                         headers={"Content-Type": "text/html"})
    with pytest.raises(ParseError):
        extract_items(broken, ParseSpec(mode="json"))


def test_require_items_and_binary():
    spec = ParseSpec(items_selector="div.nothing", require_items=True)
    with pytest.raises(ParseError):
        extract_items(_html_result(CATALOG_HTML), spec)

    png = FetchResult(url="https://a/", ok=True, status=200, body=b"\x89PNG", headers={"Content-Type": "image/png"})
    with pytest.raises(ParseError):
        extract_items(png, ParseSpec())

    assert extract_items(png, ParseSpec(mode="none")) == []


def test_get_by_path():
    obj = {"a": {"b": [{"c": 5}]}}
    assert get_by_path(obj, "a.b.0.c") == 5
    assert get_by_path(obj, "a.b.1.c") is None
    assert get_by_path(obj, "a.x") is None


def test_spec_from_dict_defaults():
    spec = ParseSpec.from_dict({"mode": "XML", "items_selector": "  "})
    assert spec.mode == "html"
    assert spec.items_selector is None
    assert spec.id_keys == ("id", "uuid", "sku", "slug")
