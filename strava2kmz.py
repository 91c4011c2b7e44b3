#!/usr/bin/env python3

from __future__ import annotations

# Standard library imports
import argparse
import csv
import gzip
import io
import itertools
import logging
import os
import shutil
import stat
import sys
import time
import xml.etree.ElementTree as ET
import zipfile
import zlib
from typing import IO, Iterable, List, NamedTuple, Optional, Tuple


MANIFEST_NAME = "activities.csv"
KML_FILE_NAME = "doc.kml"
KMZ_EXTENSION = ".kmz"
KML_NAMESPACE = "http://www.opengis.net/kml/2.2"

# Manifest column headers as written by the Strava bulk export
COLUMN_ACTIVITY_ID = "Activity ID"
COLUMN_FILENAME = "Filename"
COLUMN_MEDIA = "Media"
MEDIA_SEPARATOR = "|"

# Entry name suffix -> secondary compression wrapper applied by the export
COMPRESSED_SUFFIXES = {
	".gz": "gzip",
}

# Stored entries, rwxr-xr-x regular files
ENTRY_COMPRESSION = zipfile.ZIP_STORED
ENTRY_PERMISSIONS = 0o755

COPY_CHUNK_SIZE = 64 * 1024

STATE_CREATED = "created"
STATE_SOURCE_RESOLVED = "source_resolved"
STATE_TRACK_WRITTEN = "track_written"
STATE_MEDIA_PROCESSED = "media_processed"
STATE_FINALIZED = "finalized"
STATE_ABORTED = "aborted"

EXIT_OK = 0
EXIT_RECORD_FAILURES = 1
EXIT_FATAL = 2


class Strava2KmzError(Exception):
	pass


class ManifestError(Strava2KmzError):
	"""The manifest is missing, unreadable or structurally malformed."""


class SourceArchiveError(Strava2KmzError):
	"""The export archive cannot be opened as a zip container."""


class RecordError(Strava2KmzError):
	"""A single activity could not be converted; other activities are unaffected."""

	def __init__(self, activity_id: str, reason: str):
		super().__init__(f"Activity {activity_id}: {reason}")
		self.activity_id = activity_id
		self.reason = reason


class MissingTrackError(RecordError):
	def __init__(self, activity_id: str, track_path: str):
		super().__init__(activity_id, f"track file '{track_path}' not found in archive")
		self.track_path = track_path


class TranslationError(RecordError):
	pass


class OutputContainerError(RecordError):
	pass


class SourceEntryError(RecordError):
	"""An entry exists in the export but cannot be read (encrypted, unsupported method, corrupt)."""


# ---------------- Manifest -----------------

class ActivityRecord(NamedTuple):
	activity_id: str
	track_path: str
	media_paths: Tuple[str, ...] = ()


def parse_media_field(value: Optional[str]) -> Tuple[str, ...]:
	"""Split the pipe-delimited Media column, dropping empty segments."""
	if not value:
		return ()
	return tuple(part for part in value.split(MEDIA_SEPARATOR) if part)


def _column_index(header: List[str], name: str) -> Optional[int]:
	# Strava repeats some column names; the first occurrence wins
	try:
		return header.index(name)
	except ValueError:
		return None


def extract_records(activities_file: IO) -> List[ActivityRecord]:
	"""Parse the export manifest into activity records.

	Accepts a binary stream (decoded as UTF-8, BOM tolerated) or a text stream.
	The header must name at least the Activity ID and Filename columns; the Media
	column is optional. Parsing is strict: a single row with the wrong number of
	fields or an empty Filename fails the whole manifest and nothing is returned.
	Blank lines are ignored. Row order is preserved and duplicates are kept.
	"""
	wrapped = not isinstance(activities_file, io.TextIOBase)
	if wrapped:
		text = io.TextIOWrapper(activities_file, encoding="utf-8-sig", newline="")
	else:
		text = activities_file
	try:
		reader = csv.reader(text)
		header = next(reader, None)
		if not header:
			raise ManifestError("manifest is empty")
		id_idx = _column_index(header, COLUMN_ACTIVITY_ID)
		file_idx = _column_index(header, COLUMN_FILENAME)
		media_idx = _column_index(header, COLUMN_MEDIA)
		missing = [
			name for name, idx in ((COLUMN_ACTIVITY_ID, id_idx), (COLUMN_FILENAME, file_idx)) if idx is None
		]
		if missing:
			raise ManifestError(f"manifest header is missing column(s): {', '.join(missing)}")
		records: List[ActivityRecord] = []
		for row in reader:
			if not row:
				continue
			if len(row) != len(header):
				raise ManifestError(
					f"line {reader.line_num}: expected {len(header)} fields, found {len(row)}"
				)
			track_path = row[file_idx]
			if not track_path:
				raise ManifestError(f"line {reader.line_num}: empty {COLUMN_FILENAME} for activity {row[id_idx]}")
			media = parse_media_field(row[media_idx]) if media_idx is not None else ()
			records.append(ActivityRecord(row[id_idx], track_path, media))
		return records
	except (csv.Error, UnicodeDecodeError) as e:
		raise ManifestError(f"could not parse manifest: {e}") from e
	finally:
		if wrapped:
			# Leave closing the underlying entry stream to the caller
			text.detach()


# ---------------- Source archive -----------------

def open_source_archive(path: str) -> zipfile.ZipFile:
	try:
		return zipfile.ZipFile(path)
	except (zipfile.BadZipFile, OSError) as e:
		raise SourceArchiveError(f"Could not open {path}: {e}") from e


def resolve_entry(archive: zipfile.ZipFile, name: str) -> Optional[IO[bytes]]:
	"""Open the entry stored under exactly `name`, or return None if it is absent.

	No separator or case normalization is applied. The returned stream is
	forward-only; consume and close it before resolving the next entry.
	"""
	try:
		info = archive.getinfo(name)
	except KeyError:
		return None
	return archive.open(info)


def wrapper_for(name: str) -> Optional[str]:
	"""Return the compression wrapper implied by the entry name, None for plain entries."""
	for suffix, kind in COMPRESSED_SUFFIXES.items():
		if name.endswith(suffix):
			return kind
	return None


def maybe_decode(name: str, stream: IO[bytes]) -> IO[bytes]:
	"""Wrap `stream` in a streaming decoder when the entry name says it is compressed.

	The decision is made from the name alone; content is never inspected.
	"""
	kind = wrapper_for(name)
	if kind is None:
		return stream
	if kind == "gzip":
		return gzip.GzipFile(fileobj=stream, mode="rb")
	raise ValueError(f"Unsupported compression wrapper: {kind}")


# ---------------- Track translation (GPX/TCX -> KML) -----------------

def _local(tag: str) -> str:
	return tag.rsplit("}", 1)[-1] if tag.startswith("{") else tag


def _coord(lat: Optional[str], lon: Optional[str], ele: Optional[str] = None) -> Optional[str]:
	"""KML coordinate tuple (lon,lat[,alt]) or None if lat/lon are unusable."""
	if not lat or not lon:
		return None
	try:
		lat_f = float(lat)
		lon_f = float(lon)
	except (ValueError, TypeError):
		return None
	if ele:
		try:
			return f"{lon_f},{lat_f},{float(ele)}"
		except ValueError:
			pass
	return f"{lon_f},{lat_f}"


def _line_placemark(name: Optional[str], segments: List[List[str]]) -> ET.Element:
	placemark = ET.Element("Placemark")
	if name:
		ET.SubElement(placemark, "name").text = name
	parent = placemark
	if len(segments) > 1:
		parent = ET.SubElement(placemark, "MultiGeometry")
	for seg in segments:
		line = ET.SubElement(parent, "LineString")
		ET.SubElement(line, "tessellate").text = "1"
		ET.SubElement(line, "coordinates").text = " ".join(seg)
	return placemark


def _point_placemark(name: Optional[str], coord: str) -> ET.Element:
	placemark = ET.Element("Placemark")
	if name:
		ET.SubElement(placemark, "name").text = name
	point = ET.SubElement(placemark, "Point")
	ET.SubElement(point, "coordinates").text = coord
	return placemark


class _KmlStream:
	"""Incremental KML document writer; placemarks are flushed as they complete."""

	def __init__(self, sink: IO[bytes], document_name: Optional[str]):
		self.sink = sink
		self.document_name = document_name
		self.started = False
		self.coordinates = 0

	def _start(self) -> None:
		self.sink.write(b'<?xml version="1.0" encoding="UTF-8"?>\n')
		self.sink.write(f'<kml xmlns="{KML_NAMESPACE}">\n<Document>\n'.encode("utf-8"))
		if self.document_name:
			name = ET.Element("name")
			name.text = self.document_name
			self.sink.write(ET.tostring(name, encoding="utf-8") + b"\n")
		self.started = True

	def placemark(self, elem: ET.Element, coordinates: int) -> None:
		if not self.started:
			self._start()
		self.sink.write(ET.tostring(elem, encoding="utf-8") + b"\n")
		self.coordinates += coordinates

	def close(self) -> None:
		if not self.started:
			self._start()
		self.sink.write(b"</Document>\n</kml>\n")


def _translate_gpx(events, kml: _KmlStream) -> None:
	segments: List[List[str]] = []
	current: Optional[List[str]] = None
	for event, elem in events:
		tag = _local(elem.tag)
		if event == "start":
			if tag in ("trk", "rte"):
				segments = []
				current = [] if tag == "rte" else None
			elif tag == "trkseg":
				current = []
			continue
		if tag in ("trkpt", "rtept"):
			c = _coord(elem.get("lat"), elem.get("lon"), elem.findtext("{*}ele"))
			if c is not None and current is not None:
				current.append(c)
			elem.clear()
		elif tag == "trkseg":
			if current:
				segments.append(current)
			current = None
		elif tag in ("trk", "rte"):
			if tag == "rte" and current:
				segments.append(current)
			current = None
			if segments:
				kml.placemark(_line_placemark(elem.findtext("{*}name"), segments), sum(len(s) for s in segments))
			elem.clear()
		elif tag == "wpt":
			c = _coord(elem.get("lat"), elem.get("lon"), elem.findtext("{*}ele"))
			if c is not None:
				kml.placemark(_point_placemark(elem.findtext("{*}name"), c), 1)
			elem.clear()


def _translate_tcx(events, kml: _KmlStream) -> None:
	segments: List[List[str]] = []
	current: List[str] = []
	for event, elem in events:
		tag = _local(elem.tag)
		if event == "start":
			if tag == "Activity":
				segments = []
			elif tag == "Track":
				current = []
			continue
		if tag == "Trackpoint":
			c = _coord(
				elem.findtext(".//{*}LatitudeDegrees"),
				elem.findtext(".//{*}LongitudeDegrees"),
				elem.findtext("{*}AltitudeMeters"),
			)
			if c is not None:
				current.append(c)
			elem.clear()
		elif tag == "Track":
			if current:
				segments.append(current)
			current = []
		elif tag == "Activity":
			if segments:
				name = elem.findtext("{*}Notes") or elem.findtext("{*}Id")
				kml.placemark(_line_placemark(name, segments), sum(len(s) for s in segments))
			elem.clear()


def translate_track(source: IO[bytes], sink: IO[bytes], *, document_name: Optional[str] = None) -> int:
	"""Translate a GPX or TCX byte stream into a KML document written to `sink`.

	Input is consumed with iterparse so only the track being assembled is held in
	memory. Returns the number of coordinates written. Raises ValueError when the
	input is not a track document or carries no usable coordinates; XML, I/O and
	decompression errors propagate to the caller.
	"""
	kml = _KmlStream(sink, document_name)
	events = ET.iterparse(source, events=("start", "end"))
	_, root = next(events)
	root_tag = _local(root.tag)
	if root_tag == "gpx":
		_translate_gpx(events, kml)
	elif root_tag == "TrainingCenterDatabase":
		_translate_tcx(events, kml)
	else:
		raise ValueError(f"unsupported track document <{root_tag}>")
	if kml.coordinates == 0:
		raise ValueError("track contains no coordinates")
	kml.close()
	return kml.coordinates


# ---------------- Output container -----------------

def is_plain_activity_id(activity_id: str) -> bool:
	"""True when the id can be used as a file name directly under the output directory."""
	if not activity_id or activity_id in (".", ".."):
		return False
	if os.path.isabs(activity_id) or "\x00" in activity_id:
		return False
	return not any(sep and sep in activity_id for sep in (os.sep, os.altsep, "/"))


def kmz_path_for(out_dir: str, activity_id: str) -> str:
	return os.path.join(out_dir, f"{activity_id}{KMZ_EXTENSION}")


class EntryWriter:
	"""Write handle for one output entry; failures on the output side become OutputContainerError."""

	def __init__(self, handle: IO[bytes], writer: KmzWriter, name: str):
		self._handle = handle
		self._writer = writer
		self.name = name

	def _failed(self, action: str, e: OSError) -> OutputContainerError:
		return OutputContainerError(
			self._writer.activity_id, f"could not {action} '{self.name}' in {self._writer.path}: {e}"
		)

	def write(self, data: bytes) -> int:
		try:
			return self._handle.write(data)
		except OSError as e:
			raise self._failed("write", e) from e

	def close(self) -> None:
		try:
			self._handle.close()
		except OSError as e:
			raise self._failed("close", e) from e

	def __enter__(self) -> EntryWriter:
		return self

	def __exit__(self, *exc) -> None:
		self.close()


def default_entry_info(name: str) -> zipfile.ZipInfo:
	"""Entry header for the output container: stored without compression, mode 0755."""
	info = zipfile.ZipInfo(name, date_time=time.localtime(time.time())[:6])
	info.compress_type = ENTRY_COMPRESSION
	info.external_attr = (stat.S_IFREG | ENTRY_PERMISSIONS) << 16
	return info


class KmzWriter:
	"""A freshly created KMZ container; valid for reading only after finish()."""

	def __init__(self, path: str, activity_id: str):
		self.path = path
		self.activity_id = activity_id
		self.finished = False
		try:
			self._zip = zipfile.ZipFile(path, mode="w", compression=ENTRY_COMPRESSION)
		except OSError as e:
			raise OutputContainerError(activity_id, f"could not create {path}: {e}") from e

	def start_entry(self, name: str) -> EntryWriter:
		try:
			handle = self._zip.open(default_entry_info(name), mode="w")
		except OSError as e:
			raise OutputContainerError(self.activity_id, f"could not start '{name}' in {self.path}: {e}") from e
		return EntryWriter(handle, self, name)

	def finish(self) -> None:
		if self.finished:
			return
		try:
			self._zip.close()
		except OSError as e:
			raise OutputContainerError(self.activity_id, f"could not finish {self.path}: {e}") from e
		self.finished = True

	def abort(self) -> None:
		"""Close and delete a container that will never be finished."""
		try:
			self._zip.close()
		except (OSError, ValueError) as e:
			logging.debug("closing partial %s failed: %s", self.path, e)
		try:
			os.remove(self.path)
		except FileNotFoundError:
			pass
		except OSError as e:
			logging.warning("Could not remove partial output %s: %s", self.path, e)


# ---------------- Conversion -----------------

class RecordOutcome(NamedTuple):
	activity_id: str
	path: str
	ok: bool
	reason: Optional[str] = None
	missing_media: Tuple[str, ...] = ()


class KmzConverter:
	"""Convert one activity record into `<out_dir>/<activity_id>.kmz`.

	The source archive is borrowed for the duration of convert(); at most one of
	its entry streams is open at any time.
	"""

	def __init__(self, archive: zipfile.ZipFile, record: ActivityRecord, out_dir: str = ""):
		self.archive = archive
		self.record = record
		self.path = kmz_path_for(out_dir, record.activity_id)
		self.state = STATE_CREATED
		self.missing_media: List[str] = []
		self._writer: Optional[KmzWriter] = None
		self._track: Optional[IO[bytes]] = None

	def check_activity_id(self) -> None:
		activity_id = self.record.activity_id
		if not is_plain_activity_id(activity_id):
			raise RecordError(activity_id, f"invalid activity id '{activity_id}': not usable as a file name")

	def _open_source_entry(self, name: str) -> Optional[IO[bytes]]:
		try:
			return resolve_entry(self.archive, name)
		except (NotImplementedError, RuntimeError, zipfile.BadZipFile, OSError) as e:
			raise SourceEntryError(self.record.activity_id, f"could not read '{name}' from archive: {e}") from e

	def resolve_track(self) -> None:
		track = self._open_source_entry(self.record.track_path)
		if track is None:
			raise MissingTrackError(self.record.activity_id, self.record.track_path)
		self._track = track
		self.state = STATE_SOURCE_RESOLVED

	def write_track(self) -> None:
		record = self.record
		self._writer = KmzWriter(self.path, record.activity_id)
		kml_entry = self._writer.start_entry(KML_FILE_NAME)
		try:
			# Output-side failures are raised as OutputContainerError by the entry and pass through
			with self._track as raw, maybe_decode(record.track_path, raw) as track_file:
				points = translate_track(track_file, kml_entry, document_name=record.activity_id)
		except (ET.ParseError, ValueError, OSError, EOFError, zlib.error, zipfile.BadZipFile) as e:
			raise TranslationError(
				record.activity_id, f"could not translate '{record.track_path}': {e}"
			) from e
		finally:
			self._track = None
			kml_entry.close()
		logging.debug("Activity %s: wrote %s with %d coordinates", record.activity_id, KML_FILE_NAME, points)
		self.state = STATE_TRACK_WRITTEN

	def write_medias(self) -> None:
		for media_file_name in self.record.media_paths:
			media_file = self._open_source_entry(media_file_name)
			if media_file is None:
				logging.warning(
					"Activity %s: could not find referenced media file '%s' in archive.",
					self.record.activity_id,
					media_file_name,
				)
				self.missing_media.append(media_file_name)
				continue
			with media_file, self._writer.start_entry(media_file_name) as entry:
				try:
					shutil.copyfileobj(media_file, entry, COPY_CHUNK_SIZE)
				except (OSError, EOFError, zlib.error, zipfile.BadZipFile) as e:
					raise SourceEntryError(
						self.record.activity_id, f"could not read media '{media_file_name}': {e}"
					) from e
		self.state = STATE_MEDIA_PROCESSED

	def finish(self) -> None:
		self._writer.finish()
		self.state = STATE_FINALIZED

	def convert(self) -> RecordOutcome:
		"""Run the record through every stage; on failure no output file is left behind."""
		try:
			self.check_activity_id()
			self.resolve_track()
			self.write_track()
			self.write_medias()
			self.finish()
		except RecordError:
			self._abort()
			raise
		return RecordOutcome(self.record.activity_id, self.path, True, missing_media=tuple(self.missing_media))

	def _abort(self) -> None:
		self.state = STATE_ABORTED
		if self._track is not None:
			self._track.close()
			self._track = None
		if self._writer is not None and not self._writer.finished:
			self._writer.abort()


class RunSummary:
	def __init__(self):
		self.outcomes: List[RecordOutcome] = []
		self.stopped_early = False

	def add(self, outcome: RecordOutcome) -> None:
		self.outcomes.append(outcome)

	@property
	def succeeded(self) -> int:
		return sum(1 for o in self.outcomes if o.ok)

	@property
	def failed(self) -> int:
		return sum(1 for o in self.outcomes if not o.ok)

	@property
	def missing_media(self) -> int:
		return sum(len(o.missing_media) for o in self.outcomes)

	@property
	def failures(self) -> List[RecordOutcome]:
		return [o for o in self.outcomes if not o.ok]

	@property
	def exit_code(self) -> int:
		return EXIT_RECORD_FAILURES if self.failed else EXIT_OK


def read_manifest(archive: zipfile.ZipFile, manifest_name: str = MANIFEST_NAME) -> List[ActivityRecord]:
	try:
		activities_file = resolve_entry(archive, manifest_name)
	except (NotImplementedError, RuntimeError, zipfile.BadZipFile, OSError) as e:
		raise ManifestError(f"Could not read {manifest_name} in {archive.filename}: {e}") from e
	if activities_file is None:
		raise ManifestError(f"Could not find {manifest_name} in {archive.filename}")
	with activities_file:
		return extract_records(activities_file)


def convert_records(
	archive: zipfile.ZipFile,
	records: Iterable[ActivityRecord],
	out_dir: str = "",
	*,
	fail_fast: bool = False,
	progress: Optional[SimpleProgress] = None,
) -> RunSummary:
	"""Convert each record in turn, collecting one outcome per record."""
	summary = RunSummary()
	for record in records:
		try:
			outcome = KmzConverter(archive, record, out_dir).convert()
		except RecordError as e:
			logging.error("%s", e)
			outcome = RecordOutcome(record.activity_id, kmz_path_for(out_dir, record.activity_id), False, e.reason)
		summary.add(outcome)
		if progress:
			progress.update(len(summary.outcomes), summary.failed)
		if fail_fast and not outcome.ok:
			summary.stopped_early = True
			break
	if progress:
		progress.done()
	return summary


def convert_export(
	archive_path: str,
	out_dir: str = "",
	*,
	manifest_name: str = MANIFEST_NAME,
	fail_fast: bool = False,
	progress: Optional[SimpleProgress] = None,
) -> RunSummary:
	"""Convert every activity listed in the export's manifest into a KMZ file.

	Archive and manifest problems raise before any output is written; per-record
	failures are collected in the returned summary.
	"""
	with open_source_archive(archive_path) as archive:
		records = read_manifest(archive, manifest_name)
		logging.info("Found %d activities in %s", len(records), archive_path)
		if progress:
			progress.total = len(records)
		return convert_records(archive, records, out_dir, fail_fast=fail_fast, progress=progress)


# ---------------- CLI -----------------

class SimpleProgress:
	def __init__(self, enabled: bool, total: int = 0):
		self.enabled = enabled
		self.total = total
		self.spinner = itertools.cycle('|/-\\')
		self.last = 0.0

	def update(self, processed: int, failed: int = 0):
		if not self.enabled:
			return
		now = time.time()
		if now - self.last < 0.1 and processed < self.total:
			return
		line = f"\rConverted: {processed}/{self.total} | failed: {failed} {next(self.spinner)}"
		try:
			sys.stdout.write(line)
			sys.stdout.flush()
		except OSError:
			pass
		self.last = now

	def done(self):
		if not self.enabled:
			return
		try:
			sys.stdout.write("\n")
			sys.stdout.flush()
		except OSError:
			pass


def main(argv: Optional[Iterable[str]] = None) -> int:
	parser = argparse.ArgumentParser(description="Convert a Strava export archive to a set of kmz files.")
	parser.add_argument("in_file", help="Path to the Strava export zip.")
	parser.add_argument(
		"out_dir",
		nargs="?",
		default=os.environ.get("STRAVA2KMZ_OUT_DIR", ""),
		help="Directory where the kmz files are written (defaults to $STRAVA2KMZ_OUT_DIR or the current directory).",
	)
	parser.add_argument("--manifest-name", default=MANIFEST_NAME, help="Name of the activity manifest inside the archive.")
	parser.add_argument("--fail-fast", action="store_true", help="Stop at the first activity that cannot be converted.")
	parser.add_argument("--progress-bar", action="store_true", help="Show a single-line progress bar while converting.")
	parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v, -vv).")
	parser.add_argument("-q", "--quiet", action="store_true", help="Only report errors.")
	args = parser.parse_args(list(argv) if argv is not None else None)

	if args.quiet:
		level = logging.ERROR
	else:
		level = logging.WARNING if args.verbose == 0 else (logging.INFO if args.verbose == 1 else logging.DEBUG)
	logging.basicConfig(level=level, stream=sys.stderr, format="%(levelname)s: %(message)s")
	# basicConfig is a no-op once the root logger has handlers
	logging.getLogger().setLevel(level)

	progress = SimpleProgress(args.progress_bar)
	try:
		summary = convert_export(
			args.in_file,
			args.out_dir,
			manifest_name=args.manifest_name,
			fail_fast=args.fail_fast,
			progress=progress,
		)
	except ManifestError as e:
		print(f"Could not extract records from {args.in_file}: {e}")
		return EXIT_FATAL
	except SourceArchiveError as e:
		print(str(e))
		return EXIT_FATAL

	out_dir = args.out_dir or "."
	if not args.quiet:
		print(f"Conversion complete: converted {summary.succeeded}, failed {summary.failed} into {out_dir}")
		if summary.missing_media:
			print(f"{summary.missing_media} referenced media files were missing from the archive.")
	for failure in summary.failures:
		print(f"Failed activity {failure.activity_id}: {failure.reason}")
	if summary.stopped_early:
		print("Stopped after the first failure (--fail-fast).")
	return summary.exit_code


if __name__ == "__main__":
	sys.exit(main())
