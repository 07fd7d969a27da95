import pytest
import requests

from bkbot.catalog import CatalogIndex, parse_catalog_csv
from bkbot.models import CatalogItem
from bkbot.text import normalize_query

from conftest import FakeClock, StaticSource, make_items


class FailingSource:
    def fetch(self):
        raise requests.ConnectionError("catalog host down")


def test_exact_code_beats_fuzzy_matches(items, clock):
    extra = CatalogItem(code="999001", name="ADAPTADOR 204001 SERIES", price=50.0, stock_quantity=1)
    index = CatalogIndex(StaticSource(items + [extra]), clock=clock)
    index.refresh()
    found = index.search("204001", limit=5)
    assert [i.code for i in found] == ["204001"]


def test_exact_code_ignores_filler_words(catalog):
    found = catalog.search("precio 103317 por favor", limit=5)
    assert [i.code for i in found] == ["103317"]


def test_fuzzy_search_requires_model_number(catalog):
    names = [i.name for i in catalog.search("precio iphone 11", limit=5)]
    assert "DISPLAY IPHONE 11" in names
    assert "DISPLAY IPHONE 11 PRO MAX" in names
    assert "DISPLAY IPHONE 12" not in names


def test_fuzzy_search_ties_put_in_stock_first(catalog):
    found = catalog.search("iphone 11", limit=5)
    assert found[0].in_stock
    assert found[0].name == "DISPLAY IPHONE 11"


def test_fuzzy_search_tolerates_typos_and_accents(catalog):
    found = catalog.search("displai iphóne 12", limit=3)
    assert found and found[0].code == "103320"


def test_search_respects_limit(catalog):
    assert len(catalog.search("gps rastreador", limit=2)) == 2
    with pytest.raises(ValueError):
        catalog.search("gps", limit=0)


def test_unrelated_query_returns_nothing(catalog):
    assert catalog.search("bicicleta de montaña", limit=5) == []


def test_normalize_query_strips_fillers_and_diacritics():
    assert normalize_query("¿Tienes el PRECIO de la pantalla del iPhone 11, por favor?") == "pantalla iphone 11"


def test_failed_refresh_serves_previous_snapshot_until_stale():
    clock = FakeClock()
    source = StaticSource(make_items())
    index = CatalogIndex(source, refresh_seconds=300, max_stale_seconds=3600, clock=clock)
    assert index.refresh()
    index.source = FailingSource()

    clock.advance(600)
    assert not index.refresh()
    assert index.available
    assert index.search("103317", limit=1)

    clock.advance(3600)
    assert not index.available
    assert index.search("103317", limit=1) == []


def test_unreachable_source_on_first_load_means_empty_catalog():
    index = CatalogIndex(FailingSource(), clock=FakeClock())
    assert index.search("iphone 11", limit=3) == []
    assert not index.available
    assert index.find_by_code("103317") is None


def test_stale_snapshot_is_refreshed_on_read():
    clock = FakeClock()
    source = StaticSource(make_items())
    index = CatalogIndex(source, refresh_seconds=300, clock=clock)
    index.search("gps", limit=1)
    assert source.calls == 1
    clock.advance(301)
    index.search("gps", limit=1)
    assert source.calls == 2


def test_group_resolution_and_listing(catalog):
    assert catalog.resolve_group("gps") == "GPS"
    listed = catalog.items_in_group("GPS")
    assert [i.in_stock for i in listed] == [True, True, False]


def test_parse_catalog_csv_maps_spanish_headers():
    text = (
        "Código,Nombre,Precio,Existencia,Grupo\n"
        '103317,DISPLAY IPHONE 11,"$1,250.50",3,DISPLAYS\n'
        "103318,DISPLAY IPHONE 11 PRO MAX,980,0,DISPLAYS\n"
        ",,,,\n"
    )
    items = parse_catalog_csv(text)
    assert len(items) == 2
    assert items[0].price == 1250.5
    assert items[0].in_stock and not items[1].in_stock
    assert items[1].group == "DISPLAYS"


def test_code_as_typed_beats_filler_stripped_code(clock):
    items = [
        CatalogItem(code="A-100", name="CARGADOR RAPIDO 20W", price=199.0, stock_quantity=3),
        CatalogItem(code="100", name="FUNDA SILICON", price=49.0, stock_quantity=8),
    ]
    index = CatalogIndex(StaticSource(items), clock=clock)
    index.refresh()
    assert [i.code for i in index.search("A-100", limit=3)] == ["A-100"]
    assert [i.code for i in index.search("precio A-100", limit=3)] == ["A-100"]
    assert [i.code for i in index.search("100", limit=3)] == ["100"]


def test_model_number_glued_to_brand_still_matches(catalog):
    found = catalog.search("display iphone11", limit=5)
    assert found and found[0].code == "103317"
    assert "103320" not in [i.code for i in found]
