import pytest

from fieldrank.engine import SearchEngine
from fieldrank.schema import FieldSchema


@pytest.fixture
def engine():
    return SearchEngine(FieldSchema.default())


@pytest.fixture
def fox_engine(engine):
    engine.add_or_update("a.txt", {"name": "a.txt", "content": "the quick fox"})
    engine.add_or_update("b.txt", {"name": "b.txt", "content": "the quick quick fox fox fox"})
    return engine
