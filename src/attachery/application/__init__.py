"""Application layer - attachment lifecycle, promotion and replication."""

from attachery.application.attacher import Attacher
from attachery.application.config import AttacherConfig, BackupConfig, KeepFiles, MirrorSet
from attachery.application.executor import ParallelExecutor, run_all
from attachery.application.promotion import AtomicPromotion, PromotionAttempt
from attachery.application.registry import StorageRegistry
from attachery.application.replication import Backup, MirrorReport, Replicator
from attachery.application.stages import (
    BackgroundStage,
    BackupStage,
    InstrumentationStage,
    Stage,
    compose,
    default_stages,
)
from attachery.application.uploader import Uploader

__all__ = [
    # Lifecycle
    "Attacher",
    "AtomicPromotion",
    "PromotionAttempt",
    "Uploader",
    # Configuration
    "AttacherConfig",
    "BackupConfig",
    "KeepFiles",
    "MirrorSet",
    "StorageRegistry",
    # Replication
    "Backup",
    "MirrorReport",
    "Replicator",
    # Stages
    "Stage",
    "BackgroundStage",
    "BackupStage",
    "InstrumentationStage",
    "compose",
    "default_stages",
    # Parallelism
    "ParallelExecutor",
    "run_all",
]
