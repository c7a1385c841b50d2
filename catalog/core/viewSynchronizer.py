"""
View Synchronizer

Owns the locally held page of the record collection and keeps it current.

State machine:
    idle    -> loading   mount(), goToPage(), setFilter(), invalidate()
    loading -> idle      fetch succeeded; page state replaced wholesale
    loading -> error     fetch failed after the executor's retry budget
    error   -> loading   retry() only; page, filter and change triggers are ignored
    loading -> loading   goToPage(), setFilter() or invalidate() mid-fetch (new token)

Every transition into loading mints a new request token. A fetch result is
applied only if its token is still the current one; otherwise it is dropped.
A fetch that lands past the last page (the collection shrank) moves the
view to the last page, or to page 1 when nothing is left.
In-flight fetches are never cancelled.

Property of Uncompromising Sensors LLC.
"""

import asyncio
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, List, Optional, Tuple

from sdk.logging import getLogger

from .changeBridge import ChangeNotificationBridge
from .errors import ValidationError
from .filters import ListingFilter
from .models import Record, pageCount
from .projection import Projection
from .queryExecutor import QueryExecutor


DEFAULT_PAGE_SIZE = 12


class LoadingState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    ERROR = "error"


@dataclass(frozen=True)
class ViewState:
    currentPage: int = 1
    pageSize: int = DEFAULT_PAGE_SIZE
    totalCount: int = 0
    items: Tuple[Record, ...] = ()
    loadingState: LoadingState = LoadingState.IDLE
    requestedPage: int = 1
    token: int = 0
    error: Optional[Exception] = None
    listingFilter: ListingFilter = ListingFilter()

    @property
    def pageCount(self) -> int:
        return pageCount(self.totalCount, self.pageSize)


class ViewSynchronizer:
    """
    Paginated view over one collection.

    Usage:
        view = ViewSynchronizer(executor, bridge, 'properties')
        view.addListener(lambda state: render(state))
        await view.mount()
        view.goToPage(2)
        await view.waitIdle()
    """

    def __init__(self, executor: QueryExecutor, bridge: Optional[ChangeNotificationBridge] = None,
                 collectionName: str = 'properties', pageSize: int = DEFAULT_PAGE_SIZE,
                 projection: Projection = Projection.CARD, listingFilter: Optional[ListingFilter] = None):
        if pageSize <= 0:
            raise ValidationError("pageSize must be > 0", {'pageSize': str(pageSize)})
        self.log = getLogger()
        self.executor = executor
        self.bridge = bridge
        self.collectionName = collectionName
        self.projection = projection

        self._state = ViewState(pageSize=pageSize, listingFilter=listingFilter or ListingFilter())
        self._token = 0
        self._mounted = False
        self._fetches: set = set()
        self._listeners: List[Callable[[ViewState], None]] = []

        self.discardedResults = 0

    # ===== State =====
    @property
    def state(self) -> ViewState:
        return self._state

    @property
    def currentToken(self) -> int:
        return self._token

    @property
    def isMounted(self) -> bool:
        return self._mounted

    def addListener(self, listener: Callable[[ViewState], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def _setState(self, state: ViewState):
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                self.log.error("View listener failed", errorClass=type(e).__name__, errorMsg=str(e))

    # ===== Lifecycle =====
    async def mount(self, pageNumber: int = 1) -> None:
        if self._mounted:
            return
        self._validatePage(pageNumber)
        if self.bridge is not None:
            await self.bridge.subscribe(self.collectionName, self.invalidate)
        self._mounted = True
        self._startFetch(pageNumber, reason='mount')

    async def unmount(self) -> None:
        """Stop reacting to changes; results of fetches still in flight are dropped."""
        if not self._mounted:
            return
        self._mounted = False
        self._token += 1
        if self.bridge is not None:
            await self.bridge.unsubscribe()

    async def waitIdle(self) -> None:
        """Wait until no fetch is in flight (including fetches started while waiting)."""
        while self._fetches:
            await asyncio.gather(*list(self._fetches), return_exceptions=True)

    # ===== Triggers =====
    def goToPage(self, pageNumber: int) -> bool:
        """Fetch another page. Returns False (and does nothing) in the error state."""
        self._validatePage(pageNumber)
        if not self._mounted:
            raise RuntimeError("ViewSynchronizer is not mounted")
        if self._state.loadingState == LoadingState.ERROR:
            self.log.info("Page change ignored in error state", pageNumber=pageNumber)
            return False
        self._startFetch(pageNumber, reason='page')
        return True

    def setFilter(self, listingFilter: Optional[ListingFilter]) -> bool:
        """Replace the listing filter and go back to page 1. Returns False in the error state."""
        if not self._mounted:
            raise RuntimeError("ViewSynchronizer is not mounted")
        if self._state.loadingState == LoadingState.ERROR:
            self.log.info("Filter change ignored in error state")
            return False
        self._state = replace(self._state, listingFilter=listingFilter or ListingFilter())
        self._startFetch(1, reason='filter')
        return True

    def retry(self) -> bool:
        """Leave the error state by refetching the requested page. No-op in any other state."""
        if self._state.loadingState != LoadingState.ERROR or not self._mounted:
            self.log.debug("Retry ignored", loadingState=self._state.loadingState.value)
            return False
        self._startFetch(self._state.requestedPage, reason='retry')
        return True

    def invalidate(self) -> None:
        """Refetch after a remote change. Ignored in the error state."""
        if not self._mounted:
            return
        if self._state.loadingState == LoadingState.ERROR:
            self.log.info("Invalidation ignored in error state", collection=self.collectionName)
            return
        if self._state.loadingState == LoadingState.LOADING:
            pageNumber = self._state.requestedPage
        else:
            pageNumber = self._state.currentPage
        self._startFetch(pageNumber, reason='invalidate')

    # ===== Fetching =====
    @staticmethod
    def _validatePage(pageNumber: int):
        if not isinstance(pageNumber, int) or pageNumber < 1:
            raise ValidationError("pageNumber must be >= 1", {'pageNumber': str(pageNumber)})

    def _startFetch(self, pageNumber: int, reason: str):
        self._token += 1
        token = self._token
        self._setState(replace(self._state, loadingState=LoadingState.LOADING, requestedPage=pageNumber,
                               token=token, error=None))
        self.log.debug("Fetching page", pageNumber=pageNumber, token=token, reason=reason)

        task = asyncio.get_running_loop().create_task(self._fetch(token, pageNumber, self._state.listingFilter))
        self._fetches.add(task)
        task.add_done_callback(self._fetches.discard)

    async def _fetch(self, token: int, pageNumber: int, listingFilter: ListingFilter):
        try:
            page = await self.executor.fetchPage(pageNumber, self._state.pageSize, self.projection, listingFilter)
        except Exception as e:
            if token != self._token:
                self.discardedResults += 1
                self.log.debug("Stale fetch failure dropped", token=token, currentToken=self._token)
                return
            self.log.error("Page fetch failed", pageNumber=pageNumber, token=token,
                           errorClass=type(e).__name__, errorMsg=str(e))
            self._setState(replace(self._state, loadingState=LoadingState.ERROR, error=e))
            return

        if token != self._token:
            self.discardedResults += 1
            self.log.debug("Stale page dropped", pageNumber=pageNumber, token=token, currentToken=self._token)
            return

        # Collection shrank below the requested page
        lastPage = max(page.pageCount, 1)
        if not page.items and pageNumber > lastPage:
            self.log.info("Page past end, moving to last page", pageNumber=pageNumber, lastPage=lastPage)
            self._startFetch(lastPage, reason='clamp')
            return

        self._setState(ViewState(currentPage=pageNumber, pageSize=page.pageSize, totalCount=page.totalCount,
                                 items=tuple(page.items), loadingState=LoadingState.IDLE,
                                 requestedPage=pageNumber, token=token, error=None, listingFilter=listingFilter))
        self.log.debug("Page loaded", pageNumber=pageNumber, items=len(page.items), totalCount=page.totalCount)
