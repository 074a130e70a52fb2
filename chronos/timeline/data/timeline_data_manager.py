"""
Timeline Data Manager
=====================

Builds one timeline from a disk image.

The TimelineDataManager is responsible for:
- Opening the image and locating the NTFS partition inside it
- Discovering the event logs and prefetch files in the volume (or taking
  standalone artifact files given on the command line instead)
- Running one parser job per artifact on a thread pool
- Collecting every job's events into the aggregator and its counters into
  the run report

Author: Chronos Development
Version: 1.0
"""

import glob
import logging
import os
import sys
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import ExitStack
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from chronos.Artifacts_Collectors.MFT_Claw import MFTParser
from chronos.Artifacts_Collectors.Prefetch_claw import PrefetchParser
from chronos.Artifacts_Collectors.WinLog_Claw import EventLogParser
from chronos.config import ChronosConfig
from chronos.data.artifact_locator import (
    PREFETCH_DIRECTORY, SECURITY_LOG_PATH, SYSTEM_LOG_PATH, ArtifactLocator
)
from chronos.data.volume_reader import ByteRange, LocalFile, Volume, find_ntfs_volume
from chronos.timeline.data.event_aggregator import TimelineAggregator
from chronos.timeline.data.run_report import ParserStats, RunReport
from chronos.timeline.data.timeline_event import SourceArtifact, TimelineEvent
from chronos.utils.error_handler import ChronosError, FormatError, IoError
from chronos.utils.memory_monitor import MemoryMonitor

# Configure logger
logger = logging.getLogger(__name__)

PREFETCH_EXTENSION = '.pf'


class ParserJob:
    """One unit of work for the thread pool: a parser bound to its counters"""

    def __init__(self, stats: ParserStats, produce: Callable[[], Iterable[TimelineEvent]]):
        self.stats = stats
        self.produce = produce

    @property
    def name(self) -> str:
        return self.stats.name


class TimelineDataManager:
    """
    Orchestrates a timeline build.

    The image is opened once for the whole build and closed on every exit
    path. Only an image that cannot be opened aborts the build; any other
    failure is confined to the artifact it happened in and shows up in the
    RunReport.
    """

    def __init__(self, config: Optional[ChronosConfig] = None):
        self.config = config or ChronosConfig()
        self.memory_monitor = MemoryMonitor()

    @property
    def show_progress(self) -> bool:
        return self.config.show_progress and sys.stderr.isatty()

    def build(self,
              image_path: str,
              security_log: Optional[str] = None,
              system_log: Optional[str] = None,
              prefetch_paths: Optional[Sequence[str]] = None) -> Tuple[Tuple[TimelineEvent, ...], RunReport]:
        """
        Build the timeline of one image.

        Args:
            image_path: Raw or EWF image
            security_log: Standalone Security.evtx used instead of the image's copy
            system_log: Standalone System.evtx used instead of the image's copy
            prefetch_paths: Standalone .pf files or directories used instead
                of the image's Windows/Prefetch directory

        Returns:
            Tuple of (finalized events, run report)

        Raises:
            IoError: If the image cannot be opened
        """
        started = time.time()
        report = RunReport(image_path)
        aggregator = TimelineAggregator()

        with ExitStack() as stack:
            volume = stack.enter_context(Volume.open(image_path))
            report.container_kind = volume.kind
            self.memory_monitor.snapshot('volume opened')

            jobs: List[ParserJob] = []
            locator = None
            try:
                ntfs = find_ntfs_volume(volume)
            except FormatError as e:
                logger.error(f"No NTFS volume in {image_path}: {e}")
                report.note(f"No NTFS volume found: {e}")
            else:
                jobs.append(self._mft_job(ntfs, report))
                try:
                    locator = ArtifactLocator(ntfs)
                except FormatError as e:
                    logger.error(f"Cannot search the volume for artifacts: {e}")
                    report.note(f"Artifact discovery unavailable: {e}")

            jobs.extend(self._log_jobs(stack, locator, report, security_log, system_log))
            jobs.extend(self._prefetch_jobs(stack, locator, report, prefetch_paths))
            self.memory_monitor.snapshot('artifacts located')

            self._run_jobs(jobs, aggregator)
            self.memory_monitor.snapshot('parsers finished')

        events = aggregator.finalize()
        report.total_events = len(events)
        report.elapsed_seconds = time.time() - started

        for line in report.lines():
            logger.info(line)
        logger.info(f"Timeline holds {len(events):,} events "
                    f"(peak memory {self.memory_monitor.peak_process_mb():.1f} MB, "
                    f"{report.elapsed_seconds:.2f}s)")
        return events, report

    # Job construction

    def _mft_job(self, ntfs: ByteRange, report: RunReport) -> ParserJob:
        stats = report.register(ParserStats(name=SourceArtifact.MFT.value))
        parser = MFTParser(ntfs, max_records=self.config.max_mft_records,
                           show_progress=self.show_progress, stats=stats)
        return ParserJob(stats, parser.iter_events)

    def _log_jobs(self, stack: ExitStack, locator: Optional[ArtifactLocator], report: RunReport,
                  security_log: Optional[str], system_log: Optional[str]) -> List[ParserJob]:
        jobs = []
        for label, standalone, image_path in (
                (SourceArtifact.SECURITY_LOG, security_log, SECURITY_LOG_PATH),
                (SourceArtifact.SYSTEM_LOG, system_log, SYSTEM_LOG_PATH)):
            source = self._open_artifact(stack, report, label.value, standalone, locator, image_path)
            if source is None:
                continue

            stats = report.register(ParserStats(name=f"{label.value} ({source.name})"))
            if source.size > self.config.max_artifact_bytes:
                stats.failure = (f"{source.size:,} bytes exceeds the "
                                 f"{self.config.max_artifact_bytes:,} byte artifact limit")
                logger.error(f"{stats.name}: {stats.failure}")
                continue

            parser = EventLogParser(source, label, name=source.name,
                                    max_records=self.config.max_log_records,
                                    show_progress=self.show_progress, stats=stats)
            jobs.append(ParserJob(stats, parser.iter_events))
        return jobs

    def _prefetch_jobs(self, stack: ExitStack, locator: Optional[ArtifactLocator], report: RunReport,
                       prefetch_paths: Optional[Sequence[str]]) -> List[ParserJob]:
        limit = self.config.max_prefetch_files
        if prefetch_paths:
            sources = []
            for path in self._expand_prefetch_paths(prefetch_paths, limit, report):
                source = self._open_standalone(stack, report, SourceArtifact.PREFETCH.value, path)
                if source is not None:
                    sources.append(source)
        elif locator is not None:
            try:
                sources = locator.find_files(PREFETCH_DIRECTORY, PREFETCH_EXTENSION, limit=limit)
            except Exception as e:
                self._discovery_failed(report, f"{SourceArtifact.PREFETCH.value} ({PREFETCH_DIRECTORY})", e)
                sources = []
            else:
                if not sources:
                    report.note(f"No prefetch files found in {PREFETCH_DIRECTORY}")
        else:
            sources = []

        logger.info(f"Found {len(sources)} prefetch file(s)")
        jobs = []
        for source in sources:
            stats = report.register(ParserStats(name=f"{SourceArtifact.PREFETCH.value} {source.name}"))
            parser = PrefetchParser(source, name=source.name,
                                    max_bytes=self.config.max_artifact_bytes, stats=stats)
            jobs.append(ParserJob(stats, parser.iter_events))
        return jobs

    @staticmethod
    def _expand_prefetch_paths(paths: Sequence[str], limit: int, report: RunReport) -> List[str]:
        """Files are taken as given; directories contribute their *.pf files in name order"""
        expanded = []
        for path in paths:
            if os.path.isdir(path):
                matches = set(glob.glob(os.path.join(path, "*" + PREFETCH_EXTENSION)))
                matches.update(glob.glob(os.path.join(path, "*" + PREFETCH_EXTENSION.upper())))
                expanded.extend(sorted(matches))
            else:
                expanded.append(path)
        if len(expanded) > limit:
            logger.info(f"Processing the first {limit} of {len(expanded)} prefetch file(s)")
            report.note(f"Prefetch processing cap of {limit} file(s) reached")
            expanded = expanded[:limit]
        return expanded

    def _open_artifact(self, stack: ExitStack, report: RunReport, label: str, standalone: Optional[str],
                       locator: Optional[ArtifactLocator], image_path: str) -> Optional[ByteRange]:
        """A standalone file wins over the image's copy of the artifact"""
        if standalone:
            return self._open_standalone(stack, report, label, standalone)
        if locator is None:
            return None
        try:
            source = locator.locate(image_path)
        except Exception as e:
            self._discovery_failed(report, f"{label} ({os.path.basename(image_path)})", e)
            return None
        if source is None:
            logger.warning(f"{label} not found in image at {image_path}")
            report.note(f"{label} not found in image ({image_path})")
        return source

    @staticmethod
    def _discovery_failed(report: RunReport, name: str, error: Exception):
        """Searching the volume for one artifact failed; record it against that artifact"""
        stats = report.register(ParserStats(name=name))
        if isinstance(error, ChronosError):
            stats.failure = f"not located: {error}"
            logger.error(f"{name}: not located: {error}")
        else:
            stats.failure = f"{type(error).__name__}: {error}"
            logger.exception(f"{name}: unexpected error while locating")

    @staticmethod
    def _open_standalone(stack: ExitStack, report: RunReport, label: str, path: str) -> Optional[ByteRange]:
        try:
            source = stack.enter_context(LocalFile(path))
        except IoError as e:
            stats = report.register(ParserStats(name=f"{label} ({os.path.basename(path)})"))
            stats.failure = str(e)
            logger.error(f"{stats.name}: {e}")
            return None
        return source

    # Execution

    def _run_jobs(self, jobs: List[ParserJob], aggregator: TimelineAggregator):
        """Run every job on the pool and wait for all of them"""
        if not jobs:
            logger.warning("No artifacts to parse")
            return

        workers = min(self.config.workers, len(jobs))
        logger.info(f"Running {len(jobs)} parser job(s) (workers={workers})")
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(self._run_one, job, aggregator): job for job in jobs}
            for future in as_completed(futures):
                job = futures[future]
                future.result()
                logger.debug(job.stats.summary())

    @staticmethod
    def _run_one(job: ParserJob, aggregator: TimelineAggregator):
        """Feed one parser's events into the aggregator, recording any failure"""
        try:
            for event in job.produce():
                aggregator.add(event)
        except FormatError as e:
            job.stats.failure = str(e)
            logger.error(f"{job.name}: not parsed: {e}")
        except ChronosError as e:
            job.stats.failure = str(e)
            logger.error(f"{job.name}: stopped: {e}")
        except Exception as e:
            job.stats.failure = f"{type(e).__name__}: {e}"
            logger.exception(f"{job.name}: unexpected error")
