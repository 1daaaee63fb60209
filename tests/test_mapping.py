from erp_sync.sync.mapping import MappingCache, ResolvedCode


def test_cache_entries_expire_after_ttl(clock):
    cache = MappingCache(ttl_seconds=300, max_entries=10, clock=clock.monotonic)
    cache.put("V1:unit:KG", ResolvedCode("kilogram", "Kilogram"))
    clock.tick(299)
    assert cache.get("V1:unit:KG") == ResolvedCode("kilogram", "Kilogram")
    clock.tick(1)
    assert cache.get("V1:unit:KG") is MappingCache._MISSING


def test_cache_evicts_least_recently_used(clock):
    cache = MappingCache(ttl_seconds=300, max_entries=2, clock=clock.monotonic)
    cache.put("a", ResolvedCode("a", "A"))
    cache.put("b", ResolvedCode("b", "B"))
    cache.get("a")
    cache.put("c", ResolvedCode("c", "C"))
    assert cache.get("b") is MappingCache._MISSING
    assert cache.get("a") is not MappingCache._MISSING
    assert len(cache) == 2


def test_resolve_caches_hits_and_misses(services, agent):
    mappings = services.mappings
    mappings.clear_cache()
    assert mappings.resolve("V1", "unit", "KG") == ResolvedCode("kilogram", "Kilogram")
    assert mappings.resolve("V1", "unit", "KG") == ResolvedCode("kilogram", "Kilogram")
    assert mappings.resolve("V1", "unit", "LTR") is None
    assert mappings.resolve("V1", "unit", "LTR") is None
    stats = mappings.cache_stats()
    assert stats["hits"] == 2
    assert stats["size"] == 2


def test_resolve_is_scoped_per_vendor(services, agent):
    assert services.mappings.resolve("V2", "unit", "KG") is None


def test_create_mapping_invalidates_negative_entry(services, agent):
    mappings = services.mappings
    assert mappings.resolve("V1", "unit", "LTR") is None
    mappings.create_mapping("V1", "unit", "LTR", "liter", "Liter", created_by="ops")
    assert mappings.resolve("V1", "unit", "LTR") == ResolvedCode("liter", "Liter")


def test_deactivated_mapping_stops_resolving(services, agent):
    row = services.mappings.create_mapping("V1", "family", "FRUIT", "fruits", "Fruits")
    assert services.mappings.resolve("V1", "family", "FRUIT") is not None
    services.mappings.deactivate_mapping(row.id)
    assert services.mappings.resolve("V1", "family", "FRUIT") is None


def test_seed_is_an_upsert(services, agent):
    count = services.mappings.seed_mappings("V1", [
        {"mapping_type": "unit", "erp_code": "KG", "resto_code": "kg", "resto_label": "kg"},
        {"mapping_type": "vat", "erp_code": "TVA55", "resto_code": "vat_5_5", "resto_label": "5.5"},
    ])
    assert count == 2
    rows, total = services.mappings.list_mappings("V1")
    assert total == 3
    assert services.mappings.resolve("V1", "unit", "KG").resto_code == "kg"
