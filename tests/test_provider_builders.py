import pytest

from app.core.stream_proxy.types import MediaKey
from app.providers import build_default_providers
from app.providers.base import StreamProvider
from app.providers.builders import (
    cuevana_url,
    movies111_url,
    title_to_slug,
    videasy_url,
    vidking_url,
    vidlink_url,
)
from app.providers.registry import clear_providers, get_provider, list_providers, register_provider


def test_movie_urls():
    assert vidlink_url("movie", "42") == "https://vidlink.pro/movie/42"
    assert videasy_url("movie", "42") == "https://player.videasy.net/movie/42"
    assert vidking_url("movie", "42") == "https://www.vidking.net/embed/movie/42"
    assert movies111_url("movie", "tt0133093") == "https://111movies.com/movie/tt0133093"


def test_series_urls():
    assert vidlink_url("tv", "7", 1, 2) == "https://vidlink.pro/tv/7/1/2"
    assert videasy_url("tv", "7", 3, 4) == "https://player.videasy.net/tv/7/3/4"
    assert vidking_url("tv", "7", 1, 1) == "https://www.vidking.net/embed/tv/7/1/1"
    assert movies111_url("tv", "7", 1, 1) == "https://111movies.com/tv/7/1/1"


def test_series_url_requires_episode():
    with pytest.raises(ValueError):
        vidlink_url("tv", "7", 1, None)


@pytest.mark.parametrize(
    "title, slug",
    [
        ("Dragon Ball Z: La batalla de Freezer", "dragon-ball-z-la-batalla-de-freezer"),
        ("El Niño   y la Garza", "el-nino-y-la-garza"),
        ("Amélie", "amelie"),
        ("¿Qué pasó ayer?", "que-paso-ayer"),
    ],
)
def test_title_to_slug(title, slug):
    assert title_to_slug(title) == slug


def test_cuevana_urls():
    assert (
        cuevana_url("movie", "42", title="El Niño y la Garza")
        == "https://cuevana.biz/ver-pelicula/42/el-nino-y-la-garza"
    )
    assert (
        cuevana_url("tv", "1396", 2, 3, title="Breaking Bad")
        == "https://cuevana.biz/ver-serie/1396/breaking/temporada/2/episodio/3"
    )
    with pytest.raises(ValueError):
        cuevana_url("movie", "42", title="???")


def test_provider_builds_target_with_translated_id():
    provider = StreamProvider(
        name="vidlink", priority=0, identifier_space="tmdb", url_builder=vidlink_url, ttl_seconds=60
    )
    key = MediaKey.parse("tv", "tt0903747", 1, 2)

    target = provider.build_target(key, catalog_id="1396")

    assert target.page_url == "https://vidlink.pro/tv/1396/1/2"
    assert target.catalog_id == "1396"
    assert (target.season, target.episode) == (1, 2)


def test_title_provider_without_title_refuses():
    provider = StreamProvider(
        name="cuevana",
        priority=4,
        identifier_space="tmdb",
        url_builder=cuevana_url,
        ttl_seconds=60,
        language="es-MX",
        needs_title=True,
    )
    with pytest.raises(ValueError):
        provider.build_target(MediaKey.parse("movie", "42"), catalog_id="42")


def test_accepts_identifier_space():
    any_provider = StreamProvider(
        name="111movies", priority=3, identifier_space="any", url_builder=movies111_url, ttl_seconds=60
    )
    tmdb_provider = StreamProvider(
        name="vidlink", priority=0, identifier_space="tmdb", url_builder=vidlink_url, ttl_seconds=60
    )
    assert any_provider.accepts("imdb") and any_provider.accepts("tmdb")
    assert tmdb_provider.accepts("tmdb") and not tmdb_provider.accepts("imdb")


def test_default_providers_follow_configured_order():
    providers = build_default_providers()
    names = [p.name for p in providers]

    assert names[:4] == ["vidlink", "videasy", "vidking", "111movies"]
    assert [p.priority for p in providers] == sorted(p.priority for p in providers)
    assert all(p.ttl_seconds > 0 for p in providers)


def test_registry_sorted_by_priority():
    clear_providers()
    try:
        register_provider(
            StreamProvider(name="b", priority=2, identifier_space="any", url_builder=vidlink_url, ttl_seconds=1)
        )
        register_provider(
            StreamProvider(name="a", priority=1, identifier_space="any", url_builder=vidlink_url, ttl_seconds=1)
        )
        assert [p.name for p in list_providers()] == ["a", "b"]
        assert get_provider(" A ") is not None
        assert get_provider("zzz") is None
    finally:
        clear_providers()
