# tests/test_list_scraper.py
from conftest import BASE_URL, CAPTCHA_PAGE, make_article, make_page

from freebie_notifier.scraper.list_scraper import ParseError, parse_search_page


def test_extracts_listing_fields():
    html = make_page(make_article("2871234567", "Sofa zu verschenken"))
    page = parse_search_page(html, BASE_URL)

    assert page.ok
    listings = list(page)
    assert len(listings) == 1
    item = listings[0]
    assert item.listing_id == "2871234567"
    assert item.title == "Sofa zu verschenken"
    assert item.url == f"{BASE_URL}/s-anzeige/sofa-zu-verschenken/2871234567-272-4257"
    assert item.location == "04105 Leipzig"
    assert item.distance_km == 2.0
    assert item.posted_at == "Heute, 14:32"
    assert item.price == "Zu verschenken"
    assert item.description == "Abholung in Leipzig."


def test_image_uses_last_srcset_candidate_with_large_rule():
    html = make_page(make_article("1", "Lampe"))
    item = next(iter(parse_search_page(html, BASE_URL)))
    assert item.image_url == "https://img.kleinanzeigen.de/api/v1/prod-ads/images/ab/abc?rule=$_59.AUTO"


def test_listing_without_image():
    html = make_page(make_article("1", "Lampe", image=None))
    item = next(iter(parse_search_page(html, BASE_URL)))
    assert item.image_url is None


def test_decimal_distance_with_comma():
    html = make_page(make_article("1", "Regal", location="04109 Leipzig Zentrum (3,5 km)"))
    item = next(iter(parse_search_page(html, BASE_URL)))
    assert item.distance_km == 3.5
    assert item.location == "04109 Leipzig Zentrum"


def test_location_without_distance():
    html = make_page(make_article("1", "Regal", location="Leipzig"))
    item = next(iter(parse_search_page(html, BASE_URL)))
    assert item.distance_km is None
    assert item.location == "Leipzig"


def test_malformed_record_is_skipped_not_fatal():
    html = make_page(
        make_article("11", "Tisch"),
        make_article("abc", "Kaputte Anzeige"),
        make_article("", "Ohne Id"),
        make_article("12", "Stuhl"),
    )
    page = parse_search_page(html, BASE_URL)
    ids = [item.listing_id for item in page]

    assert ids == ["11", "12"]
    assert page.skipped == 2
    assert page.ok


def test_record_without_ad_link_is_skipped():
    html = make_page(
        make_article("11", "Werbung", href="/pro/some-shop"),
        make_article("12", "Stuhl"),
    )
    page = parse_search_page(html, BASE_URL)
    assert [item.listing_id for item in page] == ["12"]
    assert page.skipped == 1


def test_document_order_is_preserved():
    html = make_page(*(make_article(str(i), f"Artikel {i}") for i in (5, 3, 9, 1)))
    assert [item.listing_id for item in parse_search_page(html, BASE_URL)] == ["5", "3", "9", "1"]


def test_iteration_is_restartable():
    html = make_page(make_article("1", "A"), make_article("2", "B"))
    page = parse_search_page(html, BASE_URL)

    first = [item.listing_id for item in page]
    second = [item.listing_id for item in page]
    assert first == second == ["1", "2"]


def test_empty_result_list_is_a_valid_page():
    page = parse_search_page(make_page(), BASE_URL)
    assert page.ok
    assert list(page) == []


def test_unrecognized_page_carries_parse_error():
    page = parse_search_page(CAPTCHA_PAGE, BASE_URL)
    assert not page.ok
    assert isinstance(page.error, ParseError)
    assert "Sicherheitsabfrage" in str(page.error)
    assert list(page) == []


def test_empty_document_carries_parse_error():
    page = parse_search_page("   ", BASE_URL)
    assert isinstance(page.error, ParseError)
