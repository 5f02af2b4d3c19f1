import httpx
import pytest

from toolselect.catalog import SqliteCatalog, extract_yes_no, is_yes_no_question, similarity, tokenize
from toolselect.db import Database
from toolselect.schemas import EntityQuery, MethodDetail
from tests.fakes import SAMPLE_CATALOG, FakeModelClient


class BrokenModelClient:
    async def chat_completion(self, **kwargs):
        raise httpx.ConnectError("connection refused")


@pytest.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "catalog.db"))
    await database.init()
    await database.seed_catalog(SAMPLE_CATALOG)
    return database


def test_tokenize_drops_stopwords_and_plurals():
    assert tokenize("Get the Coins prices") == {"coin", "price"}
    assert tokenize(None) == set()
    assert tokenize("gas") == {"gas"}


def test_similarity_prefers_name_substring_then_best_field():
    assert similarity("coin price", "Get Coin Price", []) == 1.0
    assert similarity("bitcoin", "Get Coin Price", ["bitcoin quote"]) == 1.0
    assert similarity("price chart", "Get Price History", ["Historical chart data for a coin"]) == 0.5
    assert similarity("the", "Anything", ["the"]) == 0.0


def test_yes_no_detection_and_extraction():
    assert is_yes_no_question("Can it return bitcoin prices?")
    assert is_yes_no_question("bitcoin supported?")
    assert not is_yes_no_question("What does it return?")
    assert extract_yes_no("Yes - it handles prices") == (True, False)
    assert extract_yes_no("No, it cannot do that") == (False, True)
    assert extract_yes_no("Maybe, depends on the plan") == (False, False)


@pytest.mark.asyncio
async def test_seed_counts_and_categories(tmp_path):
    database = Database(str(tmp_path / "seed.db"))
    await database.init()
    counts = await database.seed_catalog(SAMPLE_CATALOG)
    assert counts == {"categories": 2, "apps": 2, "classes": 2, "methods": 4}
    catalog = SqliteCatalog(database)
    assert [c.slug for c in await catalog.list_categories()] == ["market-data", "messaging"]


@pytest.mark.asyncio
async def test_search_apps_with_category_filter(db):
    catalog = SqliteCatalog(db)
    apps = await catalog.search_apps(EntityQuery(search_queries=["crypto"]))
    assert [a.slug for a in apps] == ["coingecko"]
    apps = await catalog.search_apps(EntityQuery(search_queries=["crypto"], categories=["messaging"]))
    assert apps == []
    apps = await catalog.search_apps(EntityQuery(search_queries=["chat"], categories=["messaging"]))
    assert [a.slug for a in apps] == ["slack"]


@pytest.mark.asyncio
async def test_search_classes_carries_app_slug(db):
    catalog = SqliteCatalog(db)
    classes = await catalog.search_classes(EntityQuery(search_queries=["coin"]))
    assert [(c.slug, c.app_slug) for c in classes] == [("coingecko-coins", "coingecko")]


@pytest.mark.asyncio
async def test_search_methods_ranking_threshold_and_top(db):
    catalog = SqliteCatalog(db)
    methods = await catalog.search_methods(EntityQuery(search_queries=["price"]))
    assert [m.slug for m in methods] == ["coingecko-get-price", "coingecko-get-history"]

    top_one = await catalog.search_methods(EntityQuery(search_queries=["price"], top=1))
    assert [m.slug for m in top_one] == ["coingecko-get-price"]

    loose = await catalog.search_methods(EntityQuery(search_queries=["price chart"], threshold=0.3))
    strict = await catalog.search_methods(EntityQuery(search_queries=["price chart"], threshold=0.6))
    assert {m.slug for m in loose} == {"coingecko-get-price", "coingecko-get-history"}
    assert strict == []

    filtered = await catalog.search_methods(EntityQuery(search_queries=["price"], apps=["slack"]))
    assert filtered == []
    assert await catalog.search_methods(EntityQuery(search_queries=[])) == []


@pytest.mark.asyncio
async def test_detailed_methods_include_arguments(db):
    catalog = SqliteCatalog(db)
    details = await catalog.search_methods(EntityQuery(search_queries=["coin price"]), detailed=True)
    first = details[0]
    assert isinstance(first, MethodDetail)
    assert first.slug == "coingecko-get-price"
    assert first.path == "/simple/price"
    assert first.arguments[0].name == "ids"
    assert first.return_description == "Price per coin"


@pytest.mark.asyncio
async def test_resolve_methods_returns_full_records(db):
    catalog = SqliteCatalog(db)
    records = await catalog.resolve_methods(["coingecko-get-volume", "unknown"])
    assert [r.slug for r in records] == ["coingecko-get-volume"]
    assert records[0].http_verb == "GET"
    assert records[0].id
    assert records[0].class_id
    assert await catalog.resolve_methods([]) == []


@pytest.mark.asyncio
async def test_ask_yes_no_question(db):
    llm = FakeModelClient(ask_answer="Yes - this tool returns coin prices.")
    catalog = SqliteCatalog(db, llm_client=llm, model="meta-model")
    answer = await catalog.ask("methods", ["coingecko-get-price"], "Can it return bitcoin prices?")
    assert answer.yes is True
    assert answer.no is False
    assert answer.metadata["is_yes_no_question"] is True
    call = llm.calls[0]
    assert call["model"] == "meta-model"
    assert "GENEROUS" in call["messages"][0]["content"]
    assert "coingecko-get-price" in call["messages"][1]["content"]


@pytest.mark.asyncio
async def test_ask_open_question_has_no_verdict(db):
    llm = FakeModelClient(ask_answer="It returns current prices keyed by coin id.")
    catalog = SqliteCatalog(db, llm_client=llm)
    answer = await catalog.ask("apps", ["coingecko"], "What does it return")
    assert (answer.yes, answer.no) == (False, False)
    assert answer.answer.startswith("It returns")


@pytest.mark.asyncio
async def test_ask_error_paths(db):
    catalog = SqliteCatalog(db, llm_client=FakeModelClient())
    missing = await catalog.ask("classes", ["nope"], "Is it useful?")
    assert missing.metadata["error"] == "Classes not found"

    no_model = await SqliteCatalog(db).ask("apps", ["slack"], "Is it useful?")
    assert no_model.metadata["error"] == "No model configured"

    broken = await SqliteCatalog(db, llm_client=BrokenModelClient()).ask("apps", ["slack"], "Is it useful?")
    assert broken.metadata["error"] == "connection refused"
    assert broken.yes is False
