"""
Object Upload Coordinator

Runs the asset uploads of one edit session. Each accepted file uploads
independently; on success its public URL is dispatched to the edit session,
so the draft's image list grows in completion order, after any images the
record already had.

Lifecycle per file:
    submit(file) -> pre-flight (image type, <= 5 MB)
        refused  -> UploadError raised, pendingCount unchanged
        accepted -> pendingCount += 1, task PENDING -> UPLOADING
    upload done   -> task DONE, ImageAppended dispatched, pendingCount -= 1
    upload failed -> task FAILED, UploadFailed dispatched, pendingCount -= 1

A failed upload never affects its siblings and leaves no placeholder in the
image list. In-flight uploads are never cancelled; close() waits for them.

Object paths: <prefix>/<uuid><ext>, ext from the file name, else from the
declared media type.

Property of Uncompromising Sensors LLC.
"""

import asyncio
import uuid
from typing import Callable, Dict, List, Optional

from sdk.logging import getLogger

from .editSession import EditSession, ImageAppended, UploadFailed
from .errors import UploadError
from .models import UploadFile, UploadStatus, UploadTask
from .objectStorage import DEFAULT_CACHE_CONTROL, ObjectStorageBase


MAX_UPLOAD_BYTES = 5 * 1024 * 1024

EXTENSION_BY_MEDIA_TYPE = {
    'image/jpeg': '.jpg',
    'image/png': '.png',
    'image/webp': '.webp',
    'image/gif': '.gif',
    'image/svg+xml': '.svg',
}

IMAGE_EXTENSIONS = frozenset(EXTENSION_BY_MEDIA_TYPE.values()) | {'.jpeg', '.avif', '.bmp'}


def inferExtension(fileName: Optional[str], contentType: Optional[str]) -> str:
    """'.ext' from the file name (lower-cased), else from the media type, else ''"""
    name = fileName or ''
    idx = name.rfind('.')
    if -1 < idx < len(name) - 1:
        return name[idx:].lower()
    return EXTENSION_BY_MEDIA_TYPE.get((contentType or '').lower(), '')


def buildObjectPath(prefix: str, fileName: Optional[str], contentType: Optional[str],
                    objectId: Optional[str] = None) -> str:
    objectId = objectId or str(uuid.uuid4())
    prefix = (prefix or '').strip('/')
    name = f"{objectId}{inferExtension(fileName, contentType)}"
    return f"{prefix}/{name}" if prefix else name


def isImage(file: UploadFile) -> bool:
    if file.contentType:
        return file.contentType.lower().startswith('image/')
    return inferExtension(file.name, None) in IMAGE_EXTENSIONS


class ObjectUploadCoordinator:
    """
    Independent concurrent uploads feeding one EditSession.

    Usage:
        coordinator = ObjectUploadCoordinator(storage, session)
        task = coordinator.submit(UploadFile.fromPath('front.jpg'))
        await coordinator.waitIdle()
    """

    def __init__(self, storage: ObjectStorageBase, session: Optional[EditSession] = None,
                 prefix: str = 'properties', cacheControl: str = DEFAULT_CACHE_CONTROL,
                 maxBytes: int = MAX_UPLOAD_BYTES, idFactory: Optional[Callable[[], str]] = None):
        self.log = getLogger()
        self.storage = storage
        self.session = session or EditSession()
        self.prefix = prefix
        self.cacheControl = cacheControl
        self.maxBytes = maxBytes
        self.idFactory = idFactory or (lambda: str(uuid.uuid4()))

        self._tasks: Dict[str, UploadTask] = {}   # unresolved tasks only
        self._runners: set = set()
        self._listeners: List[Callable[[UploadTask], None]] = []
        self._closed = False

        self.uploadedCount = 0
        self.failedCount = 0

    # ===== Properties =====
    @property
    def pendingCount(self) -> int:
        return len(self._tasks)

    @property
    def pendingTasks(self) -> List[UploadTask]:
        return list(self._tasks.values())

    # ===== Listeners =====
    def addListener(self, listener: Callable[[UploadTask], None]) -> Callable[[], None]:
        """Called once per task when it resolves (done or failed)."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    # ===== Submission =====
    def preflight(self, file: UploadFile) -> None:
        """
        Raises:
            UploadError: If the file is not an image, is empty, or exceeds maxBytes
        """
        if not isImage(file):
            raise UploadError(f"{file.name} is not an image ({file.contentType or 'unknown type'})", fileName=file.name)
        if file.size == 0:
            raise UploadError(f"{file.name} is empty", fileName=file.name)
        if file.size > self.maxBytes:
            limitMb = self.maxBytes / (1024 * 1024)
            raise UploadError(f"{file.name} exceeds {limitMb:g} MB ({file.size} bytes)", fileName=file.name)

    def submit(self, file: UploadFile) -> UploadTask:
        """
        Accept `file` and start uploading it. Must be called from the event loop.

        Raises:
            UploadError: Pre-flight refusal, or the coordinator is closed
        """
        if self._closed:
            raise UploadError("Upload session is closed", fileName=file.name)
        try:
            self.preflight(file)
        except UploadError as e:
            self.log.warning("Upload refused", fileName=file.name, bytesLength=file.size, reason=str(e))
            raise

        loop = asyncio.get_running_loop()
        task = UploadTask(sourceBlob=file,
                          objectPath=buildObjectPath(self.prefix, file.name, file.contentType, self.idFactory()))
        task._resolved = loop.create_future()
        self._tasks[task.taskId] = task

        runner = loop.create_task(self._upload(task))
        self._runners.add(runner)
        runner.add_done_callback(self._runners.discard)

        self.log.info("Upload accepted", fileName=file.name, objectPath=task.objectPath, pending=self.pendingCount)
        return task

    async def _upload(self, task: UploadTask):
        file = task.sourceBlob
        task.status = UploadStatus.UPLOADING
        try:
            ref = await self.storage.put(task.objectPath, file.data, file.contentType or 'application/octet-stream',
                                         self.cacheControl)
        except Exception as e:
            error = UploadError(f"Upload of {file.name} failed: {e}", fileName=file.name)
            error.__cause__ = e
            task.status = UploadStatus.FAILED
            task.error = error
            self.failedCount += 1
            self.log.warning("Upload failed", fileName=file.name, objectPath=task.objectPath,
                             errorClass=type(e).__name__, errorMsg=str(e))
            self._resolve(task, UploadFailed(file.name, str(error)))
        else:
            task.status = UploadStatus.DONE
            task.resultRef = ref
            self.uploadedCount += 1
            self.log.info("Upload complete", fileName=file.name, objectPath=task.objectPath)
            self._resolve(task, ImageAppended(ref, task.taskId))

    def _resolve(self, task: UploadTask, action):
        # Draft mutation and pendingCount decrement happen in one step
        try:
            self.session.dispatch(action)
        finally:
            self._tasks.pop(task.taskId, None)
            if task._resolved is not None and not task._resolved.done():
                task._resolved.set_result(task)

        for listener in list(self._listeners):
            try:
                listener(task)
            except Exception as e:
                self.log.error("Upload listener failed", taskId=task.taskId, errorClass=type(e).__name__, errorMsg=str(e))

    # ===== Waiting / teardown =====
    async def waitIdle(self) -> None:
        """Wait until no upload is in flight, including ones submitted while waiting."""
        while self._runners:
            await asyncio.gather(*list(self._runners), return_exceptions=True)

    async def close(self) -> None:
        """Refuse new uploads, wait for in-flight ones and drop task records."""
        self._closed = True
        await self.waitIdle()
        self._tasks.clear()
        self._listeners.clear()
        self.log.debug("Upload session closed", uploaded=self.uploadedCount, failed=self.failedCount)
