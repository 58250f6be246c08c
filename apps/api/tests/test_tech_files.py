import pytest

from services.tech_files import set_path_value


def test_set_path_value_creates_missing_objects_without_mutating_input():
    original = {"dimensions": {"unit": "cm"}}

    updated = set_path_value(original, "dimensions.height", 42)
    created = set_path_value(original, "fit.chest.ease", "4cm")

    assert updated == {"dimensions": {"unit": "cm", "height": 42}}
    assert created["fit"] == {"chest": {"ease": "4cm"}}
    assert original == {"dimensions": {"unit": "cm"}}


def test_set_path_value_indexes_into_lists():
    data = {"materials": [{"name": "cotton"}, {"name": "poly"}]}

    assert set_path_value(data, "materials.1.name", "nylon")["materials"][1] == {"name": "nylon"}
    assert set_path_value(data, "materials.0", "wool")["materials"][0] == "wool"


@pytest.mark.parametrize("path", ["", "...", "materials.first", "materials.5.name"])
def test_set_path_value_rejects_bad_paths(path):
    with pytest.raises(ValueError):
        set_path_value({"materials": [{"name": "cotton"}]}, path, "x")
