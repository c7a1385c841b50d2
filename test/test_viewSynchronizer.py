"""
View Synchronizer Tests

Tests for:
- Stale responses dropped by request token
- loading -> error on failure, error -> loading only via retry()
- Invalidations ignored in the error state
- Moving to the last page when the collection shrinks (page 1 when it empties)
- Failed mounts and listing filters
- End-to-end refresh: SQLite store write -> change channel -> refetch

Run: python -m pytest test/test_viewSynchronizer.py -v

Property of Uncompromising Sensors LLC.
"""

import asyncio
import sys
import uuid
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from catalog.core.changeBridge import ChangeNotificationBridge
from catalog.core.errors import TransientFailure, ValidationError
from catalog.core.filters import ListingFilter
from catalog.core.models import Page, Record, RecordKind, pageItemCount
from catalog.core.propertyStore import SqlitePropertyStore
from catalog.core.queryExecutor import QueryExecutor, RetryPolicy
from catalog.core.viewSynchronizer import LoadingState, ViewSynchronizer
from sdk.transport import connectTransport


class ScriptedExecutor:
    """fetchPage() calls wait until the test answers them"""

    def __init__(self):
        self.calls = []
        self.filters = []

    async def fetchPage(self, pageNumber, pageSize, projection, listingFilter=None):
        future = asyncio.get_running_loop().create_future()
        self.calls.append((pageNumber, future))
        self.filters.append(listingFilter)
        return await future

    def answer(self, index, totalCount, pageSize=12):
        pageNumber, future = self.calls[index]
        items = [Record(id=f'{pageNumber}-{i}', title=f'Listing {i}')
                 for i in range(pageItemCount(pageNumber, totalCount, pageSize))]
        future.set_result(Page(pageNumber=pageNumber, pageSize=pageSize, totalCount=totalCount, items=items))

    def fail(self, index, error=None):
        self.calls[index][1].set_exception(error or TransientFailure('store unavailable', attempts=4))


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


# =============================================================================
# REQUEST TOKENS
# =============================================================================

class TestRequestTokens:

    @pytest.mark.asyncio
    async def test_stale_response_dropped(self):
        executor = ScriptedExecutor()
        view = ViewSynchronizer(executor)
        await view.mount(1)
        await settle()

        view.goToPage(2)
        await settle()
        assert [pageNumber for pageNumber, _ in executor.calls] == [1, 2]

        # Page 2 answers first; the late page 1 answer must not overwrite it
        executor.answer(1, totalCount=30)
        await settle()
        executor.answer(0, totalCount=30)
        await view.waitIdle()

        assert view.state.loadingState == LoadingState.IDLE
        assert view.state.currentPage == 2
        assert view.state.items[0].id == '2-0'
        assert view.discardedResults == 1

    @pytest.mark.asyncio
    async def test_stale_response_while_still_loading(self):
        executor = ScriptedExecutor()
        view = ViewSynchronizer(executor)
        await view.mount(1)
        await settle()
        view.goToPage(3)
        await settle()

        executor.answer(0, totalCount=30)
        await settle()
        assert view.state.loadingState == LoadingState.LOADING
        assert view.state.requestedPage == 3

        executor.answer(1, totalCount=30)
        await view.waitIdle()
        assert view.state.currentPage == 3
        assert len(view.state.items) == 6

    @pytest.mark.asyncio
    async def test_each_fetch_mints_new_token(self):
        executor = ScriptedExecutor()
        view = ViewSynchronizer(executor)
        tokens = []
        view.addListener(lambda state: tokens.append(state.token))

        await view.mount(1)
        await settle()
        view.invalidate()
        await settle()

        assert view.currentToken == 2
        assert tokens[0] == 1 and tokens[-1] == 2
        assert [pageNumber for pageNumber, _ in executor.calls] == [1, 1]

        executor.answer(0, totalCount=5)
        executor.answer(1, totalCount=6)
        await view.waitIdle()
        assert view.state.totalCount == 6


# =============================================================================
# ERROR STATE
# =============================================================================

class TestErrorState:

    @pytest.mark.asyncio
    async def test_failure_then_retry(self):
        executor = ScriptedExecutor()
        view = ViewSynchronizer(executor)
        await view.mount(2)
        await settle()

        executor.fail(0)
        await view.waitIdle()
        assert view.state.loadingState == LoadingState.ERROR
        assert isinstance(view.state.error, TransientFailure)

        assert view.retry()
        await settle()
        assert view.state.loadingState == LoadingState.LOADING
        assert executor.calls[1][0] == 2

        executor.answer(1, totalCount=20)
        await view.waitIdle()
        assert view.state.loadingState == LoadingState.IDLE
        assert view.state.currentPage == 2
        assert view.state.error is None

    @pytest.mark.asyncio
    async def test_invalidate_ignored_in_error(self):
        executor = ScriptedExecutor()
        view = ViewSynchronizer(executor)
        await view.mount()
        await settle()
        executor.fail(0)
        await view.waitIdle()

        view.invalidate()
        await settle()

        assert len(executor.calls) == 1
        assert view.state.loadingState == LoadingState.ERROR

    @pytest.mark.asyncio
    async def test_retry_outside_error_is_noop(self):
        executor = ScriptedExecutor()
        view = ViewSynchronizer(executor)
        await view.mount()
        await settle()
        executor.answer(0, totalCount=3)
        await view.waitIdle()

        assert view.retry() is False
        assert len(executor.calls) == 1

    @pytest.mark.asyncio
    async def test_page_change_ignored_in_error(self):
        executor = ScriptedExecutor()
        view = ViewSynchronizer(executor)
        await view.mount()
        await settle()
        executor.fail(0)
        await view.waitIdle()

        assert view.goToPage(2) is False
        await settle()

        assert len(executor.calls) == 1
        assert view.state.loadingState == LoadingState.ERROR
        assert view.state.requestedPage == 1
        assert isinstance(view.state.error, TransientFailure)

    @pytest.mark.asyncio
    async def test_invalid_page_rejected(self):
        view = ViewSynchronizer(ScriptedExecutor())
        await view.mount()
        with pytest.raises(ValidationError):
            view.goToPage(0)


# =============================================================================
# MOUNTING
# =============================================================================

class FailingOnceBridge:
    """Bridge whose first subscribe() fails"""

    def __init__(self):
        self.subscribeCalls = 0
        self.unsubscribeCalls = 0

    async def subscribe(self, collectionName, onInvalidate):
        self.subscribeCalls += 1
        if self.subscribeCalls == 1:
            raise ConnectionRefusedError('channel down')

    async def unsubscribe(self):
        self.unsubscribeCalls += 1


class TestMount:

    @pytest.mark.asyncio
    async def test_failed_subscribe_leaves_view_unmounted(self):
        executor = ScriptedExecutor()
        bridge = FailingOnceBridge()
        view = ViewSynchronizer(executor, bridge, 'properties')

        with pytest.raises(ConnectionRefusedError):
            await view.mount()

        assert view.isMounted is False
        assert executor.calls == []
        with pytest.raises(RuntimeError):
            view.goToPage(1)

        # A second mount is not short-circuited
        await view.mount()
        await settle()

        assert view.isMounted
        assert bridge.subscribeCalls == 2
        assert [pageNumber for pageNumber, _ in executor.calls] == [1]


# =============================================================================
# FILTERS
# =============================================================================

class TestFilters:

    @pytest.mark.asyncio
    async def test_filter_resets_to_first_page(self):
        executor = ScriptedExecutor()
        view = ViewSynchronizer(executor)
        await view.mount(3)
        await settle()
        executor.answer(0, totalCount=40)
        await view.waitIdle()

        rentals = ListingFilter(kind='rental', zone='La Barra')
        assert view.setFilter(rentals)
        await settle()

        assert executor.calls[1][0] == 1
        assert executor.filters[1] == rentals

        executor.answer(1, totalCount=5)
        await view.waitIdle()
        assert view.state.currentPage == 1
        assert view.state.totalCount == 5
        assert view.state.listingFilter.kind == RecordKind.RENTAL

    @pytest.mark.asyncio
    async def test_result_for_previous_filter_dropped(self):
        executor = ScriptedExecutor()
        view = ViewSynchronizer(executor)
        await view.mount()
        await settle()

        view.setFilter(ListingFilter(zone='Centro'))
        await settle()

        executor.answer(1, totalCount=2)
        await settle()
        executor.answer(0, totalCount=50)
        await view.waitIdle()

        assert view.state.totalCount == 2
        assert view.state.listingFilter.zone == 'Centro'
        assert view.discardedResults == 1

    @pytest.mark.asyncio
    async def test_invalidate_keeps_filter(self):
        executor = ScriptedExecutor()
        view = ViewSynchronizer(executor, listingFilter=ListingFilter(minPrice=100))
        await view.mount()
        await settle()
        executor.answer(0, totalCount=3)
        await view.waitIdle()

        view.invalidate()
        await settle()

        assert executor.filters[1].minPrice == 100

    @pytest.mark.asyncio
    async def test_filter_change_ignored_in_error(self):
        executor = ScriptedExecutor()
        view = ViewSynchronizer(executor)
        await view.mount()
        await settle()
        executor.fail(0)
        await view.waitIdle()

        assert view.setFilter(ListingFilter(zone='Sur')) is False
        await settle()

        assert len(executor.calls) == 1
        assert view.state.loadingState == LoadingState.ERROR
        assert view.state.listingFilter.isEmpty


# =============================================================================
# PAGE CLAMPING
# =============================================================================

class TestShrinkingCollection:

    @pytest.mark.asyncio
    async def test_moves_to_last_page(self):
        executor = ScriptedExecutor()
        view = ViewSynchronizer(executor)
        await view.mount(3)
        await settle()

        # Only 13 records left: page 3 no longer exists
        executor.answer(0, totalCount=13)
        await settle()
        assert executor.calls[1][0] == 2

        executor.answer(1, totalCount=13)
        await view.waitIdle()
        assert view.state.currentPage == 2
        assert len(view.state.items) == 1
        assert view.state.pageCount == 2

    @pytest.mark.asyncio
    async def test_emptied_collection_moves_to_first_page(self):
        executor = ScriptedExecutor()
        view = ViewSynchronizer(executor)
        await view.mount(3)
        await settle()

        # Every record deleted while page 3 was shown
        executor.answer(0, totalCount=0)
        await settle()
        assert executor.calls[1][0] == 1

        executor.answer(1, totalCount=0)
        await view.waitIdle()
        assert len(executor.calls) == 2
        assert view.state.loadingState == LoadingState.IDLE
        assert view.state.currentPage == 1
        assert view.state.items == ()

    @pytest.mark.asyncio
    async def test_empty_collection_stays_on_first_page(self):
        executor = ScriptedExecutor()
        view = ViewSynchronizer(executor)
        await view.mount()
        await settle()
        executor.answer(0, totalCount=0)
        await view.waitIdle()

        assert view.state.currentPage == 1
        assert view.state.items == ()
        assert view.state.pageCount == 0


# =============================================================================
# END TO END
# =============================================================================

class TestLiveRefresh:

    @pytest.mark.asyncio
    async def test_store_write_refreshes_view(self, tmp_path):
        uri = f"memory://view-{uuid.uuid4().hex[:8]}"
        storeChannel = await connectTransport(uri)
        viewChannel = await connectTransport(uri)
        store = SqlitePropertyStore(str(tmp_path / 'catalog.db'), publisher=storeChannel)
        executor = QueryExecutor(store, readPolicy=RetryPolicy(retries=1, backoffBaseMs=1, timeoutMs=2000))
        bridge = ChangeNotificationBridge(viewChannel, windowMs=20)
        view = ViewSynchronizer(executor, bridge, 'properties', pageSize=2)

        await view.mount()
        await view.waitIdle()
        assert view.state.totalCount == 0

        for i in range(3):
            payload = Record(title=f'Listing {i}', price=100, zone='Sur', images=['https://cdn.test/x.jpg']).toPayload()
            await store.insert(payload)
        await asyncio.sleep(0.15)
        await view.waitIdle()

        assert view.state.totalCount == 3
        assert [r.title for r in view.state.items] == ['Listing 2', 'Listing 1']
        assert bridge.invalidations >= 1

        await view.unmount()
        await storeChannel.close()
        await viewChannel.close()
        await store.close()

    @pytest.mark.asyncio
    async def test_unmount_drops_in_flight_result(self):
        executor = ScriptedExecutor()
        view = ViewSynchronizer(executor)
        await view.mount()
        await settle()

        await view.unmount()
        executor.answer(0, totalCount=4)
        await view.waitIdle()

        assert view.state.loadingState == LoadingState.LOADING
        assert view.discardedResults == 1
