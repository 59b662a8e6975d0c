"""
Unit of work tests: session handling and write conflict mapping
"""
import pytest
from pymongo.errors import OperationFailure

from core.errors import ConcurrentModificationError
from core.unit_of_work import unit_of_work


class _Transaction:

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class _Session:

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def start_transaction(self):
        return _Transaction()


class _Client:

    async def start_session(self):
        return _Session()


class TestUnitOfWork:

    async def test_no_client_yields_no_session(self):
        async with unit_of_work(None) as session:
            assert session is None

    async def test_client_yields_session(self):
        async with unit_of_work(_Client()) as session:
            assert isinstance(session, _Session)

    async def test_write_conflict_becomes_concurrent_modification(self):
        conflict = OperationFailure(
            "WriteConflict", code=112, details={"errorLabels": ["TransientTransactionError"]}
        )
        with pytest.raises(ConcurrentModificationError):
            async with unit_of_work(_Client()):
                raise conflict

    async def test_other_mongo_errors_propagate(self):
        with pytest.raises(OperationFailure):
            async with unit_of_work(_Client()):
                raise OperationFailure("bad value", code=2)
