"""
DerivativeGenerator - Produces every enabled size for one permanent image.
"""

import logging
import posixpath
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Dict, Iterable, Optional

from PIL import Image

from .asset_record import DerivativeDescriptor
from .errors import DerivativeTimeoutError, TransientStorageError
from .generation_result import GenerationResult
from .size_spec import SizeSpec, enabled_specs
from .storage_config import Location
from .thumbnail_generator import ThumbnailGenerator

DERIVATIVE_ROOT = 'thumbs'


def derivative_path(permanent_path: str, size_spec: SizeSpec) -> str:
    """thumbs/{size}/{permanent_path with the output format's extension}."""
    root, _ = posixpath.splitext(permanent_path.lstrip('/'))
    return f"{DERIVATIVE_ROOT}/{size_spec.name}/{root}{size_spec.extension}"


class _RunState:
    """
    Shared by one run's coordinator and its size workers.

    Once cancelled, every key in ``written`` belongs to the coordinator to
    remove; a worker finishing later removes its own write.
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.cancelled = False
        self.written = []


class DerivativeGenerator:
    """
    Reads the source once, decodes it once, then generates each size on a
    thread pool and joins them under a single deadline.

    A failing size does not affect the others; it is reported in
    GenerationResult.failures.
    """

    def __init__(
        self,
        object_store,
        thumbnail_generator: ThumbnailGenerator,
        size_specs: Iterable[SizeSpec],
        max_workers: int = 4,
        timeout_seconds: float = 120,
        logger: Optional[logging.Logger] = None
    ):
        """
        Args:
            object_store: S3Client or LocalClient
            thumbnail_generator: Single-size resizer/encoder
            size_specs: Size table; disabled sizes are ignored
            max_workers: Upper bound on concurrent sizes
            timeout_seconds: Deadline for decode plus all sizes
            logger: Optional logger instance
        """
        self.object_store = object_store
        self.thumb_gen = thumbnail_generator
        self.size_specs: Dict[str, SizeSpec] = enabled_specs(list(size_specs))
        self.max_workers = max(1, max_workers)
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

    def plan(self, permanent_path: str) -> Dict[str, str]:
        """Output key per enabled size, without touching storage."""
        return {name: derivative_path(permanent_path, spec) for name, spec in self.size_specs.items()}

    def generate_derivatives(self, permanent_path: str) -> GenerationResult:
        """
        Generate and store every enabled size for permanent_path.

        Raises:
            TransientStorageError: the source could not be read
            UnsupportedMediaError: the source is not a decodable image
            DerivativeTimeoutError: the deadline passed before all sizes finished
        """
        result = GenerationResult(permanent_path=permanent_path)
        data = self.object_store.read(Location.PERMANENT, permanent_path)

        deadline = time.monotonic() + self.timeout_seconds
        image = self.thumb_gen.decode(data)
        self.logger.info(
            f"Generating {len(self.size_specs)} derivatives for {permanent_path} "
            f"({image.width}x{image.height}, {len(data)} bytes)"
        )
        if time.monotonic() >= deadline:
            raise DerivativeTimeoutError(f"decode of {permanent_path} exceeded {self.timeout_seconds}s")
        if not self.size_specs:
            return result.finish()

        state = _RunState()
        executor = ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(self.size_specs)),
            thread_name_prefix='derivative',
        )
        try:
            futures = {
                executor.submit(self._generate_size, image, permanent_path, spec, state): spec
                for spec in self.size_specs.values()
            }
            done, not_done = wait(futures, timeout=max(0.0, deadline - time.monotonic()))
            if not_done:
                pending = sorted(futures[f].name for f in not_done)
                self._cancel(state, permanent_path)
                raise DerivativeTimeoutError(
                    f"{permanent_path}: sizes {', '.join(pending)} not finished after {self.timeout_seconds}s"
                )

            for future in done:
                spec = futures[future]
                try:
                    result.derivatives[spec.name] = future.result()
                except Exception as e:
                    self.logger.exception(f"Derivative {spec.name} failed for {permanent_path}: {e}")
                    result.failures[spec.name] = str(e) or e.__class__.__name__
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        result.finish()
        self.logger.info(
            f"Derivatives for {permanent_path}: {len(result.derivatives)} generated, "
            f"{len(result.failures)} failed, {result.bytes_generated} bytes ({result.elapsed_seconds:.2f}s)"
        )
        return result

    def _cancel(self, state: _RunState, permanent_path: str) -> None:
        """Stop workers from storing further sizes and drop what is already stored."""
        with state.lock:
            state.cancelled = True
            written = list(state.written)
        if written:
            self.logger.warning(f"Timed out on {permanent_path}, removing {len(written)} stored derivatives")
        for key in written:
            self._discard(key)

    def _discard(self, key: str) -> None:
        try:
            self.object_store.delete(Location.DERIVATIVE, key)
        except TransientStorageError as e:
            self.logger.warning(f"Could not remove abandoned derivative {key}: {e}")

    def _generate_size(
        self,
        image: Image.Image,
        permanent_path: str,
        spec: SizeSpec,
        state: _RunState
    ) -> DerivativeDescriptor:
        data, width, height, content_type = self.thumb_gen.generate(image, spec)
        key = derivative_path(permanent_path, spec)
        if state.cancelled:
            raise DerivativeTimeoutError(f"{spec.name}: run cancelled before store")

        self.object_store.write(Location.DERIVATIVE, key, data, content_type)
        with state.lock:
            abandoned = state.cancelled
            if not abandoned:
                state.written.append(key)
        if abandoned:
            self._discard(key)
            raise DerivativeTimeoutError(f"{spec.name}: run cancelled during store")

        self.logger.debug(f"Stored {spec.name} derivative at {key} ({len(data)} bytes)")
        return DerivativeDescriptor(
            size_name=spec.name,
            path=key,
            width=width,
            height=height,
            byte_size=len(data),
            format=spec.output_format,
            url=self.object_store.public_url(Location.DERIVATIVE, key),
        )
