from .container import Container, Dataset, StorageError, Transfer, TransferMode
from .context import Flags, ScenarioContext
from .driver import ScenarioDriver
from .group import GroupError, ProcessGroup, SoloGroup, ThreadGroup
from .limits import Limits
from .matrix import ConfigurationMatrix
from .memory_container import InMemoryContainer, MemoryStorage
from .oracle import OracleBuffer
from .results import ResultAggregator
from .seed_clock import SeedClock
from .selection import Region, Selection, SpaceSelection, UsageMask, generate_selection
from .zarr_container import ZarrContainer

__all__ = [
    "Container",
    "Dataset",
    "StorageError",
    "Transfer",
    "TransferMode",
    "Flags",
    "ScenarioContext",
    "ScenarioDriver",
    "GroupError",
    "ProcessGroup",
    "SoloGroup",
    "ThreadGroup",
    "Limits",
    "ConfigurationMatrix",
    "InMemoryContainer",
    "MemoryStorage",
    "OracleBuffer",
    "ResultAggregator",
    "SeedClock",
    "Region",
    "Selection",
    "SpaceSelection",
    "UsageMask",
    "generate_selection",
    "ZarrContainer",
]
