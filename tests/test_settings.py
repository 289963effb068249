import pytest

from errors import ValidationError
from settings import SETTINGS_FIELDS, default_settings, merge_with_defaults, validate_settings


def test_defaults_cover_every_field():
    defaults = default_settings()

    assert set(defaults) == set(SETTINGS_FIELDS)
    assert defaults['theme_name'] == 'light'
    assert defaults['sort_newest_first'] is True


def test_valid_partial_update_passes():
    assert validate_settings({'theme_name': 'night', 'theme_size': 1.25}) == {'theme_name': 'night', 'theme_size': 1.25}


def test_unknown_key_rejects_whole_update():
    with pytest.raises(ValidationError) as excinfo:
        validate_settings({'theme_name': 'night', 'colour': 'red'})

    assert excinfo.value.errors == {'colour': "unknown setting"}


@pytest.mark.parametrize("values,key", [
    ({'refresh_rate': "10"}, 'refresh_rate'),
    ({'refresh_rate': True}, 'refresh_rate'),
    ({'refresh_rate': -5}, 'refresh_rate'),
    ({'sort_newest_first': 1}, 'sort_newest_first'),
    ({'theme_name': 'neon'}, 'theme_name'),
    ({'filter': 'read'}, 'filter'),
])
def test_bad_values_are_reported_per_key(values, key):
    with pytest.raises(ValidationError) as excinfo:
        validate_settings(values)

    assert list(excinfo.value.errors) == [key]


def test_bool_is_not_an_int():
    with pytest.raises(ValidationError) as excinfo:
        validate_settings({'feed_list_width': False})

    assert excinfo.value.errors['feed_list_width'] == "expected int, got bool"


def test_non_object_payload():
    with pytest.raises(ValidationError):
        validate_settings(['theme_name'])


def test_merge_with_defaults_drops_stale_keys():
    merged = merge_with_defaults({'theme_name': 'sepia', 'retired_option': 1, 'refresh_rate': 'soon'})

    assert merged['theme_name'] == 'sepia'
    assert 'retired_option' not in merged
    assert merged['refresh_rate'] == SETTINGS_FIELDS['refresh_rate'].default
