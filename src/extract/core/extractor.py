"""
Extractor plugin contract and registry.

An extractor turns raw blocks (and possibly other extractors' output)
into its own derived data. The scheduler only relies on the contract
defined here; what an extractor computes is its own business.
"""

import importlib
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from .exceptions import ExtractorConfigError
from .models import DependencyCondition, ExtractedBlock, ExtractionStatus
from .services import LocalServices, TransactionalServices


logger = logging.getLogger(__name__)


class BlockExtractor(ABC):
    """
    Abstract base class for block extractors.

    Attributes:
        name: Unique, case-sensitive name; stored in every status row
        extractor_dependencies: Names of extractors that must be 'done'
            for a block before this extractor may process it
        disable_perf_boost: Always process blocks one per transaction
    """

    name: str = ""
    extractor_dependencies: Sequence[str] = ()
    disable_perf_boost: bool = False

    @abstractmethod
    def extract(self, services: TransactionalServices, blocks: List[ExtractedBlock]) -> None:
        """
        Write derived data for a run of blocks.

        Blocks are always consecutive and ascending by height. All writes
        must go through services.tx; they are committed together with the
        status update or not at all. Raise RetryableError to have the
        blocks fetched again on a later pass.
        """
        pass

    @abstractmethod
    def get_data(self, services: LocalServices, blocks: List[ExtractedBlock]) -> Any:
        """Read previously extracted data for blocks through services.conn."""
        pass

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r}>"


class ExtractorRegistry:
    """
    Fixed, ordered set of extractors resolved at startup.

    Validates names and resolves dependency names to extractor
    descriptors once, so the scheduler never looks them up per pass.

    Example:
        >>> registry = ExtractorRegistry([BlocksExtractor(), TransfersExtractor()])
        >>> registry.conditions_for(registry.get("transfers"))
        (DependencyCondition(extractor_name='blocks', ...),)
    """

    def __init__(self, extractors: Iterable[BlockExtractor]):
        self._extractors: List[BlockExtractor] = []
        self._by_name: Dict[str, BlockExtractor] = {}

        for extractor in extractors:
            self._add(extractor)

        self._dependencies: Dict[str, Tuple[BlockExtractor, ...]] = {
            e.name: self._resolve(e) for e in self._extractors
        }
        self._check_cycles()

        self._conditions: Dict[str, Tuple[DependencyCondition, ...]] = {
            name: tuple(
                DependencyCondition(dep.name, ExtractionStatus.DONE) for dep in deps
            )
            for name, deps in self._dependencies.items()
        }

        logger.debug(f"Registered extractors: {self.names}")

    def _add(self, extractor: BlockExtractor) -> None:
        if not isinstance(extractor, BlockExtractor):
            raise ExtractorConfigError(f"Not a BlockExtractor: {extractor!r}")
        if not extractor.name:
            raise ExtractorConfigError(f"Extractor has no name: {extractor!r}")
        if extractor.name in self._by_name:
            raise ExtractorConfigError(f"Duplicate extractor name: {extractor.name}")

        self._extractors.append(extractor)
        self._by_name[extractor.name] = extractor

    def _resolve(self, extractor: BlockExtractor) -> Tuple[BlockExtractor, ...]:
        resolved = []
        for dep_name in extractor.extractor_dependencies or ():
            if dep_name == extractor.name:
                raise ExtractorConfigError(f"Extractor {extractor.name} depends on itself")
            dep = self._by_name.get(dep_name)
            if dep is None:
                raise ExtractorConfigError(
                    f"Extractor {extractor.name} depends on unknown extractor {dep_name}"
                )
            if dep not in resolved:
                resolved.append(dep)
        return tuple(resolved)

    def _check_cycles(self) -> None:
        visiting = set()
        visited = set()

        def visit(name: str, path: List[str]) -> None:
            if name in visited:
                return
            if name in visiting:
                cycle = " -> ".join(path + [name])
                raise ExtractorConfigError(f"Cyclic extractor dependencies: {cycle}")
            visiting.add(name)
            for dep in self._dependencies[name]:
                visit(dep.name, path + [name])
            visiting.discard(name)
            visited.add(name)

        for extractor in self._extractors:
            visit(extractor.name, [])

    @property
    def extractors(self) -> List[BlockExtractor]:
        """Extractors in registration order."""
        return list(self._extractors)

    @property
    def names(self) -> List[str]:
        return [e.name for e in self._extractors]

    def get(self, name: str) -> BlockExtractor:
        try:
            return self._by_name[name]
        except KeyError:
            raise ExtractorConfigError(f"Unknown extractor: {name}") from None

    def dependencies_of(self, extractor: BlockExtractor) -> Tuple[BlockExtractor, ...]:
        return self._dependencies[extractor.name]

    def conditions_for(self, extractor: BlockExtractor) -> Tuple[DependencyCondition, ...]:
        return self._conditions[extractor.name]

    def __iter__(self):
        return iter(self._extractors)

    def __len__(self) -> int:
        return len(self._extractors)


def load_extractor(ref: str) -> BlockExtractor:
    """
    Import an extractor from a reference string.

    Accepts "package.module:attribute" or "package.module.attribute".
    Classes are instantiated without arguments.
    """
    if ":" in ref:
        module_path, attr_name = ref.split(":", 1)
    else:
        parts = ref.rsplit(".", 1)
        if len(parts) != 2:
            raise ExtractorConfigError(f"Invalid extractor reference: {ref}")
        module_path, attr_name = parts

    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise ExtractorConfigError(f"Could not import extractor module for {ref}: {e}") from e

    target = getattr(module, attr_name, None)
    if target is None:
        raise ExtractorConfigError(f"Extractor not found: {ref}")

    if isinstance(target, type):
        if not issubclass(target, BlockExtractor):
            raise ExtractorConfigError(f"{ref} is not a BlockExtractor")
        try:
            target = target()
        except TypeError as e:
            raise ExtractorConfigError(f"Could not instantiate extractor {ref}: {e}") from e

    if not isinstance(target, BlockExtractor):
        raise ExtractorConfigError(f"{ref} is not a BlockExtractor")

    return target


def load_extractors(refs: Iterable[str]) -> ExtractorRegistry:
    """Import every reference and build a registry in the given order."""
    return ExtractorRegistry(load_extractor(ref) for ref in refs)
