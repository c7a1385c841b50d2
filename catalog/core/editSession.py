"""
Edit Session

Draft state for one record being created or edited. Only reduceDraft()
produces new draft states; everything else (form input, upload completions,
manual image URLs) dispatches action messages to the session.

Actions:
    SetField(name, value)        - set a record field on the draft
    ImageAppended(ref, taskId)   - an upload completed; ref goes to the end
    ImageRemoved(index)          - remove one image from the draft
    ImageUrlAdded(url)           - manually entered image URL
    UploadFailed(fileName, msg)  - per-file upload failure for display

Dispatch is synchronous: an action is fully applied, and listeners notified,
before dispatch() returns. Completion callbacks that dispatch in turn therefore
append images in the order the uploads completed.

Property of Uncompromising Sensors LLC.
"""

from dataclasses import dataclass, replace, fields as dataclassFields
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from sdk.logging import getLogger

from .errors import ValidationError
from .models import Record, RecordId, RecordKind


# ============================================================================
# Actions
# ============================================================================

@dataclass(frozen=True)
class SetField:
    name: str
    value: Any


@dataclass(frozen=True)
class ImageAppended:
    ref: str
    taskId: Optional[str] = None


@dataclass(frozen=True)
class ImageRemoved:
    index: int


@dataclass(frozen=True)
class ImageUrlAdded:
    url: str


@dataclass(frozen=True)
class UploadFailed:
    fileName: str
    message: str


Action = Union[SetField, ImageAppended, ImageRemoved, ImageUrlAdded, UploadFailed]

EDITABLE_FIELDS = frozenset(f.name for f in dataclassFields(Record)) - {'id', 'images', 'createdAt'}


# ============================================================================
# State + reducer
# ============================================================================

@dataclass(frozen=True)
class DraftState:
    recordId: Optional[RecordId] = None
    values: Tuple[Tuple[str, Any], ...] = ()
    images: Tuple[str, ...] = ()
    uploadErrors: Tuple[Tuple[str, str], ...] = ()
    revision: int = 0

    def value(self, name: str, default: Any = None) -> Any:
        return dict(self.values).get(name, default)

    @property
    def isNew(self) -> bool:
        return self.recordId is None


def reduceDraft(state: DraftState, action: Action) -> DraftState:
    """
    Pure reducer: returns the next draft state for `action`.

    Raises:
        ValidationError: For unknown fields, inline data:image URLs or bad indexes
    """
    if isinstance(action, SetField):
        if action.name not in EDITABLE_FIELDS:
            raise ValidationError(f"Field '{action.name}' is not editable", {action.name: 'not editable'})
        value = action.value
        if action.name == 'kind':
            try:
                value = RecordKind.parse(value)
            except ValueError as e:
                raise ValidationError(f"Unknown kind: {value!r}", {'kind': 'must be sale or rental'}) from e
        values = dict(state.values)
        values[action.name] = value
        return replace(state, values=tuple(values.items()), revision=state.revision + 1)

    if isinstance(action, ImageAppended):
        return replace(state, images=state.images + (action.ref,), revision=state.revision + 1)

    if isinstance(action, ImageUrlAdded):
        url = (action.url or '').strip()
        if not url:
            raise ValidationError("Image URL is empty", {'images': 'URL required'})
        if url.startswith('data:image/'):
            raise ValidationError("Inline images are not accepted; upload the file instead",
                                  {'images': 'inline data URL not allowed'})
        return replace(state, images=state.images + (url,), revision=state.revision + 1)

    if isinstance(action, ImageRemoved):
        if not 0 <= action.index < len(state.images):
            raise ValidationError(f"No image at index {action.index}", {'images': 'index out of range'})
        images = state.images[:action.index] + state.images[action.index + 1:]
        return replace(state, images=images, revision=state.revision + 1)

    if isinstance(action, UploadFailed):
        return replace(state, uploadErrors=state.uploadErrors + ((action.fileName, action.message),),
                       revision=state.revision + 1)

    raise TypeError(f"Unknown draft action: {action!r}")


# ============================================================================
# Session
# ============================================================================

class EditSession:
    """Holds the current draft and applies dispatched actions through reduceDraft()"""

    def __init__(self, record: Optional[Record] = None):
        self.log = getLogger()
        self._listeners: List[Callable[[DraftState, Action], None]] = []
        if record is None:
            self._state = DraftState()
        else:
            values = {name: getattr(record, name) for name in EDITABLE_FIELDS}
            self._state = DraftState(recordId=record.id, values=tuple(values.items()),
                                     images=tuple(record.images))
        self._createdAt = record.createdAt if record is not None else None

    @property
    def state(self) -> DraftState:
        return self._state

    @property
    def images(self) -> List[str]:
        return list(self._state.images)

    def dispatch(self, action: Action) -> DraftState:
        self._state = reduceDraft(self._state, action)
        for listener in list(self._listeners):
            try:
                listener(self._state, action)
            except Exception as e:
                self.log.error("Draft listener failed", errorClass=type(e).__name__, errorMsg=str(e))
        return self._state

    def addListener(self, listener: Callable[[DraftState, Action], None]) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def setFields(self, **values) -> DraftState:
        for name, value in values.items():
            self.dispatch(SetField(name, value))
        return self._state

    def toRecord(self) -> Record:
        values: Dict[str, Any] = dict(self._state.values)
        return Record(id=self._state.recordId, images=list(self._state.images), createdAt=self._createdAt, **values)
