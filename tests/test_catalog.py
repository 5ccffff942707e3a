import json
import pytest

from signage.catalog import SAMPLE_SPOTS, load_catalog, sample_catalog


def test_sample_catalog_is_a_copy():
    spots = sample_catalog()
    assert [s.id for s in spots] == [f"ad-00{i}" for i in range(1, 7)]
    spots[0].title = "changed"
    assert SAMPLE_SPOTS[0].title == "TechPro Gadgets"


def test_load_catalog_list_and_wrapped(tmp_path):
    items = [{"id": "s1", "title": "Shoes", "target_gender": "female", "target_age": "young", "duration": 20}]
    p1 = tmp_path / "list.json"
    p1.write_text(json.dumps(items), encoding="utf-8")
    p2 = tmp_path / "wrapped.json"
    p2.write_text(json.dumps({"spots": items}), encoding="utf-8")

    for path in (p1, p2):
        spots = load_catalog(str(path))
        assert len(spots) == 1
        assert spots[0].target_gender == "female"
        assert spots[0].duration == 20


def test_load_catalog_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_catalog(str(tmp_path / "missing.json"))
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"items": 3}), encoding="utf-8")
    with pytest.raises(ValueError):
        load_catalog(str(bad))
