# /// script
# requires-python = "==3.12.*"
# dependencies = [
#   "httpx~=0.28.0",
#   "tqdm",
#   "humanize"
# ]
# ///

"""
Downloads every library visible to an account on a file-hosting server, and unpacks each one into a local directory.

It's a one-shot run: ping the server, exchange the credentials for a token, re-ping with the token,
  list the libraries, then for each library request a zip download-link, fetch the zip, and extract it.
  Nothing is persisted other than the extracted files.

Usage:
  uv run ./sync_libraries.py --config ./client.ini

Args:
  --config (optional) -- path to the INI file; defaults to `client.ini`
  --output-dir (optional) -- overrides the `output` setting from the INI file
  --no-progress (optional) -- disables the progress bar

Config file:
  [general]
  username = someone@example.com
  password = the-password
  url = https://files.example.com/api2
  output = data          ; optional, defaults to `data`
"""

import argparse
import configparser
import io
import logging
import os
import sys
import zipfile
import zlib
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

import httpx
import humanize
from tqdm import tqdm

## setup logging ----------------------------------------------------
log_level_name: str = os.getenv('LOG_LEVEL', 'INFO').upper()
log_level = getattr(
    logging, log_level_name, logging.INFO
)  # maps the string name to the corresponding logging level constant; defaults to INFO
logging.basicConfig(
    level=log_level,
    format='[%(asctime)s] %(levelname)s [%(module)s-%(funcName)s()::%(lineno)d] %(message)s',
    datefmt='%d/%b/%Y %H:%M:%S',
)
if log_level <= logging.INFO:
    for noisy in ('httpx', 'httpcore'):  # prevent httpx from logging
        lg = logging.getLogger(noisy)
        lg.setLevel(logging.WARNING)
        lg.propagate = False
log = logging.getLogger(__name__)

## constants --------------------------------------------------------
CONFIG_FILENAME: str = 'client.ini'
CONFIG_SECTION: str = 'general'
DEFAULT_OUTPUT_DIR: str = 'data'
OUTPUT_MODE: int = 0o755

PATH_PING: str = '/ping/'
PATH_AUTH_TOKEN: str = '/auth-token/'
PATH_AUTH_PING: str = '/auth/ping/'
PATH_LIBRARIES: str = '/repos/'
PATH_DIR_DOWNLOAD_TPL: str = '/repos/{library_id}/dir/download/?p=/'

USER_AGENT: str = 'library-archive-sync/1.0'

## InvalidURL is not an HTTPError; a malformed link or base url fails the same way as a refused connection
TRANSPORT_ERRORS: tuple[type[Exception], ...] = (httpx.HTTPError, httpx.InvalidURL)


## errors -----------------------------------------------------------
class SyncError(Exception):
    """
    Base for every failure this script raises; `kind` names the failure for logs and reports.
    """

    kind: str = 'sync_error'


class ConfigurationError(SyncError):
    kind = 'config'


class UnreachableError(SyncError):
    kind = 'unreachable'


class AuthFailedError(SyncError):
    kind = 'auth_failed'


class RequestFailedError(SyncError):
    kind = 'request_failed'


class FetchFailedError(SyncError):
    kind = 'fetch_failed'


class ExtractFailedError(SyncError):
    kind = 'extract_failed'


class FatalRunError(SyncError):
    """
    Raised by the orchestrator when a setup step fails; nothing useful can be produced after that.
    `failed_state` is the state the run was trying to reach.
    """

    kind = 'fatal'

    def __init__(self, message: str, failed_state: 'RunState') -> None:
        super().__init__(message)
        self.failed_state: RunState = failed_state


## data -------------------------------------------------------------
@dataclass(frozen=True)
class Configuration:
    """Connection settings loaded once from the INI file."""

    username: str
    password: str
    url: str
    output_dir: Path


@dataclass(frozen=True)
class Library:
    id: str
    name: str

    def __str__(self) -> str:
        return f'{self.name} ({self.id})'


@dataclass(frozen=True)
class EntryResult:
    """
    Outcome of extracting a single archive entry.
    status is one of: written, directory, open_failed, mkdir_failed, read_failed, write_failed
    """

    name: str
    status: str
    error: str | None = None
    size: int | None = None

    @property
    def ok(self) -> bool:
        return self.status in ('written', 'directory')


@dataclass
class LibraryOutcome:
    """
    What happened to one library during the run.
    - `link_error` is set when the download-link request failed (the fetch is then skipped).
    - `archive_error` is set when the fetch or the zip-parse failed.
    - `entries` holds one EntryResult per archive entry that was attempted.
    """

    library: Library
    link_error: str | None = None
    archive_error: str | None = None
    archive_size: int | None = None
    entries: list[EntryResult] = field(default_factory=list)

    @property
    def failed_entries(self) -> list[EntryResult]:
        return [entry for entry in self.entries if not entry.ok]

    @property
    def ok(self) -> bool:
        return self.link_error is None and self.archive_error is None and not self.failed_entries


@dataclass
class RunReport:
    libraries: list[Library] = field(default_factory=list)
    outcomes: list[LibraryOutcome] = field(default_factory=list)

    def succeeded(self) -> list[LibraryOutcome]:
        return [o for o in self.outcomes if o.ok]

    def failed(self) -> list[LibraryOutcome]:
        return [o for o in self.outcomes if not o.ok]


class RunState(Enum):
    """
    The linear states of a run. A failure while trying to reach any state up to CATALOG_FETCHED ends the run.
    """

    INIT = 0
    CONFIG_LOADED = 1
    OUTPUT_DIR_READY = 2
    REACHABLE = 3
    AUTHENTICATED = 4
    AUTH_VERIFIED = 5
    CATALOG_FETCHED = 6
    LINK_REQUESTED = 7
    MATERIALIZED = 8
    DONE = 9

    @property
    def is_fatal_boundary(self) -> bool:
        return self.value <= RunState.CATALOG_FETCHED.value


FATAL_STATES: frozenset[RunState] = frozenset(state for state in RunState if state.is_fatal_boundary)


## configuration ----------------------------------------------------
class ConfigLoader:
    """
    Reads the `[general]` section of the INI file into a Configuration.
    - `username`, `password` and `url` are required.
    - `output` is optional and defaults to `data`.
    - Strips any trailing slash from `url` so endpoint paths can be appended.
    """

    REQUIRED_KEYS: tuple[str, ...] = ('username', 'password', 'url')

    @staticmethod
    def load(path: Path) -> Configuration:
        cfg = configparser.ConfigParser(interpolation=None)
        try:
            read_ok: list[str] = cfg.read(path, encoding='utf-8')
        except (configparser.Error, UnicodeDecodeError) as exc:
            raise ConfigurationError(f'unable to parse config file ``{path}``: {exc}') from exc
        if not read_ok:
            raise ConfigurationError(f'unable to read config file ``{path}``')
        if not cfg.has_section(CONFIG_SECTION):
            raise ConfigurationError(f'missing [{CONFIG_SECTION}] section in ``{path}``')

        section: configparser.SectionProxy = cfg[CONFIG_SECTION]
        missing: list[str] = [key for key in ConfigLoader.REQUIRED_KEYS if not section.get(key, '').strip()]
        if missing:
            raise ConfigurationError(f'missing key(s) {", ".join(missing)} in [{CONFIG_SECTION}] of ``{path}``')

        output: str = section.get('output', '').strip() or DEFAULT_OUTPUT_DIR
        return Configuration(
            username=section['username'].strip(),
            password=section['password'],
            url=section['url'].strip().rstrip('/'),
            output_dir=Path(output).expanduser(),
        )


## remote service ---------------------------------------------------
class UrlBuilder:
    """
    Builds the service endpoint URLs from the configured base address.
    """

    def __init__(self, base: str) -> None:
        self.base: str = base.rstrip('/')

    def ping_url(self) -> str:
        return f'{self.base}{PATH_PING}'

    def auth_token_url(self) -> str:
        return f'{self.base}{PATH_AUTH_TOKEN}'

    def auth_ping_url(self) -> str:
        return f'{self.base}{PATH_AUTH_PING}'

    def libraries_url(self) -> str:
        return f'{self.base}{PATH_LIBRARIES}'

    def download_link_url(self, library_id: str) -> str:
        return f'{self.base}{PATH_DIR_DOWNLOAD_TPL.format(library_id=library_id)}'


def auth_headers(token: str) -> dict[str, str]:
    """
    Builds the header sent with every authenticated request.
    """
    return {'Authorization': f'Token {token}'}


def unquote_link(body: str) -> str:
    """
    The download-link endpoint answers with a JSON string, eg `"https://host/x"`; returns it without the quotes.
    """
    return body.strip().strip('"')


class SessionClient:
    """
    Checks that the service is reachable and that the credentials are good.
    - `probe()` pings without credentials.
    - `authenticate()` exchanges username/password for a token.
    - `probe_authenticated()` pings again with the token attached.
    The three are kept separate so a network problem and a credential problem produce different messages.
    """

    def __init__(self, client: httpx.Client, urls: UrlBuilder) -> None:
        self.client: httpx.Client = client
        self.urls: UrlBuilder = urls

    def probe(self) -> None:
        url: str = self.urls.ping_url()
        log.debug(f'pinging, ``{url}``')
        try:
            resp: httpx.Response = self.client.get(url)
        except TRANSPORT_ERRORS as exc:
            raise UnreachableError(f'ping failed: {exc}') from exc
        if resp.status_code != httpx.codes.OK:
            raise UnreachableError(f'expected response code 200, but received {resp.status_code}')

    def authenticate(self, username: str, password: str) -> str:
        url: str = self.urls.auth_token_url()
        log.debug(f'requesting token, ``{url}``')
        try:
            resp: httpx.Response = self.client.post(url, data={'username': username, 'password': password})
        except TRANSPORT_ERRORS as exc:
            raise AuthFailedError(f'token request failed: {exc}') from exc
        if not resp.is_success:
            raise AuthFailedError(f'token request returned status {resp.status_code}')
        try:
            payload: object = resp.json()
        except ValueError as exc:
            raise AuthFailedError(f'token response is not JSON: {exc}') from exc
        token: object = payload.get('token') if isinstance(payload, dict) else None
        if not isinstance(token, str) or not token:
            raise AuthFailedError('token response has no `token` field')
        return token

    def probe_authenticated(self, token: str) -> None:
        url: str = self.urls.auth_ping_url()
        log.debug(f'auth-pinging, ``{url}``')
        try:
            resp: httpx.Response = self.client.get(url, headers=auth_headers(token))
        except TRANSPORT_ERRORS as exc:
            raise AuthFailedError(f'auth ping failed: {exc}') from exc
        if resp.status_code != httpx.codes.OK:
            raise AuthFailedError(f'expected response code 200, but received {resp.status_code}')


class CatalogLister:
    """
    Fetches the full list of libraries in a single request (the service doesn't paginate it).
    """

    def __init__(self, client: httpx.Client, urls: UrlBuilder) -> None:
        self.client: httpx.Client = client
        self.urls: UrlBuilder = urls

    def list_libraries(self, token: str) -> list[Library]:
        url: str = self.urls.libraries_url()
        log.debug(f'listing libraries, ``{url}``')
        try:
            resp: httpx.Response = self.client.get(url, headers=auth_headers(token))
        except TRANSPORT_ERRORS as exc:
            raise RequestFailedError(f'library listing failed: {exc}') from exc
        if not resp.is_success:
            raise RequestFailedError(f'library listing returned status {resp.status_code}')
        try:
            records: object = resp.json()
        except ValueError as exc:
            raise RequestFailedError(f'library listing is not JSON: {exc}') from exc
        if not isinstance(records, list):
            raise RequestFailedError('library listing is not a JSON array')

        libraries: list[Library] = []
        for record in records:
            if not isinstance(record, dict) or record.get('id') in (None, ''):
                raise RequestFailedError(f'library record without an id, ``{record!r}``')
            libraries.append(Library(id=str(record['id']), name=str(record.get('name') or '')))
        return libraries


class ArchiveLocator:
    """
    Asks the service for a short-lived link to a zip of a library's whole tree.
    """

    def __init__(self, client: httpx.Client, urls: UrlBuilder) -> None:
        self.client: httpx.Client = client
        self.urls: UrlBuilder = urls

    def request_download_link(self, token: str, library_id: str) -> str:
        url: str = self.urls.download_link_url(library_id)
        log.debug(f'requesting download link, ``{url}``')
        try:
            resp: httpx.Response = self.client.get(url, headers=auth_headers(token))
        except TRANSPORT_ERRORS as exc:
            raise RequestFailedError(f'download-link request failed: {exc}') from exc
        if not resp.is_success:
            raise RequestFailedError(f'expected status code 200, but received {resp.status_code}')
        link: str = unquote_link(resp.text)
        if not link:
            raise RequestFailedError('download-link response was empty')
        return link


## extraction -------------------------------------------------------
def _open_with_mode(path: str, flags: int) -> int:
    """
    `open()` opener that creates new files with OUTPUT_MODE.
    """
    return os.open(path, flags, OUTPUT_MODE)


## errors a single zip entry can raise while being opened or read
ENTRY_ERRORS: tuple[type[BaseException], ...] = (
    zipfile.BadZipFile,
    zlib.error,
    EOFError,
    OSError,
    RuntimeError,  # encrypted entry
    NotImplementedError,  # unsupported compression
    ValueError,
)


def extract_entry(zf: zipfile.ZipFile, info: zipfile.ZipInfo, output_dir: Path) -> EntryResult:
    """
    Extracts one entry, returning its outcome instead of raising.
    Entry names are joined under output_dir (a leading slash is dropped, so absolute names stay inside it);
      there is no other sanitizing, since the archive comes from the same service that issued the link.
    """
    name: str = info.filename
    relative: str = name.lstrip('/')
    target: Path = output_dir / relative

    if info.is_dir():
        try:
            target.mkdir(mode=OUTPUT_MODE, parents=True, exist_ok=True)
        except OSError as exc:
            log.warning(f'unable to create directory within zip, ``{target}``; {exc}')
            return EntryResult(name, 'mkdir_failed', str(exc))
        return EntryResult(name, 'directory')

    try:
        stream = zf.open(info)
    except ENTRY_ERRORS as exc:
        log.warning(f'unable to open file within zip, ``{name}``; {exc}')
        return EntryResult(name, 'open_failed', str(exc))

    with stream:
        parent: Path = Path(relative).parent
        if str(parent) not in ('', '.'):
            try:
                (output_dir / parent).mkdir(mode=OUTPUT_MODE, parents=True, exist_ok=True)
            except OSError as exc:
                log.warning(f'unable to create output directory ``{output_dir / parent}`` for zip entry ``{name}``; {exc}')
                return EntryResult(name, 'mkdir_failed', str(exc))
        try:
            data: bytes = stream.read()
        except ENTRY_ERRORS as exc:
            log.warning(f'unable to read file within zip, ``{name}``; {exc}')
            return EntryResult(name, 'read_failed', str(exc))

    try:
        with open(target, 'wb', opener=_open_with_mode) as fh:
            fh.write(data)
    except OSError as exc:
        log.warning(f'unable to write output file from zip, ``{target}``; {exc}')
        return EntryResult(name, 'write_failed', str(exc))
    return EntryResult(name, 'written', size=len(data))


def extract_archive(output_dir: Path, data: bytes) -> list[EntryResult]:
    """
    Unpacks zip bytes into output_dir, one EntryResult per entry.
    A bad archive raises ExtractFailedError; a bad entry is recorded and the next entry is tried.
    Files already on disk are overwritten.
    """
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError, EOFError, OSError) as exc:
        raise ExtractFailedError(f'unable to read archive: {exc}') from exc
    with zf:
        return [extract_entry(zf, info, output_dir) for info in zf.infolist()]


class ArchiveMaterializer:
    """
    Fetches a library's zip into memory and extracts it under the output directory.
    - The whole archive is buffered; only one library's archive is held at a time.
    - The response is released on every path, including errors.
    """

    def __init__(self, client: httpx.Client) -> None:
        self.client: httpx.Client = client
        self.last_archive_size: int | None = None

    def fetch(self, url: str) -> bytes:
        log.debug(f'fetching archive, ``{url}``')
        try:
            with self.client.stream('GET', url) as resp:
                if not resp.is_success:
                    raise FetchFailedError(f'expected status code 200, but received {resp.status_code}')
                return resp.read()
        except TRANSPORT_ERRORS as exc:
            raise FetchFailedError(f'archive fetch failed: {exc}') from exc

    def materialize(self, output_dir: Path, url: str) -> list[EntryResult]:
        self.last_archive_size = None
        data: bytes = self.fetch(url)
        self.last_archive_size = len(data)
        log.debug(f'archive size, ``{humanize.naturalsize(len(data))}``')
        return extract_archive(output_dir, data)


## orchestration ----------------------------------------------------
class RunOrchestrator:
    """
    Runs the whole sync, one state at a time.
    - Setup steps (config, output dir, ping, token, auth-ping, catalog) raise FatalRunError on failure.
    - After the catalog is fetched, each library gets one link request and, if that worked, one materialize;
      their failures are logged and recorded on the library's outcome.
    - Returns a RunReport holding the full catalog and every outcome.
    """

    def __init__(
        self,
        client: httpx.Client,
        config_path: Path,
        output_dir_override: Path | None = None,
        show_progress: bool = True,
    ) -> None:
        self.client: httpx.Client = client
        self.config_path: Path = config_path
        self.output_dir_override: Path | None = output_dir_override
        self.show_progress: bool = show_progress
        self.state: RunState = RunState.INIT
        self.config: Configuration | None = None
        self.token: str | None = None

    def _advance(self, target: RunState) -> None:
        log.debug(f'state, ``{self.state.name}`` -> ``{target.name}``')
        self.state = target

    def _fatal(self, target: RunState, message: str, exc: Exception) -> FatalRunError:
        log.debug(f'failed to reach state, ``{target.name}``')
        return FatalRunError(f'{message}: {exc}', target)

    def setup(self) -> list[Library]:
        """
        Walks INIT through CATALOG_FETCHED; any failure here aborts the run.
        """
        try:
            config: Configuration = ConfigLoader.load(self.config_path)
        except ConfigurationError as exc:
            raise self._fatal(RunState.CONFIG_LOADED, 'Unable to parse configuration file', exc) from exc
        if self.output_dir_override is not None:
            config = replace(config, output_dir=self.output_dir_override)
        self.config = config
        self._advance(RunState.CONFIG_LOADED)

        try:
            config.output_dir.mkdir(mode=OUTPUT_MODE, parents=True, exist_ok=True)
        except OSError as exc:
            raise self._fatal(RunState.OUTPUT_DIR_READY, f'Unable to create output directory {config.output_dir}', exc) from exc
        self._advance(RunState.OUTPUT_DIR_READY)

        urls = UrlBuilder(config.url)
        session = SessionClient(self.client, urls)
        try:
            session.probe()
        except UnreachableError as exc:
            raise self._fatal(RunState.REACHABLE, 'Unable to ping', exc) from exc
        self._advance(RunState.REACHABLE)

        try:
            self.token = session.authenticate(config.username, config.password)
        except AuthFailedError as exc:
            raise self._fatal(RunState.AUTHENTICATED, 'Unable to get auth token', exc) from exc
        self._advance(RunState.AUTHENTICATED)

        try:
            session.probe_authenticated(self.token)
        except AuthFailedError as exc:
            raise self._fatal(RunState.AUTH_VERIFIED, 'Unable to auth ping', exc) from exc
        self._advance(RunState.AUTH_VERIFIED)

        try:
            libraries: list[Library] = CatalogLister(self.client, urls).list_libraries(self.token)
        except RequestFailedError as exc:
            raise self._fatal(RunState.CATALOG_FETCHED, 'Unable to list libraries', exc) from exc
        self._advance(RunState.CATALOG_FETCHED)
        log.info(f'found {len(libraries)} librar{"y" if len(libraries) == 1 else "ies"}')
        return libraries

    def sync_library(self, library: Library, locator: ArchiveLocator, materializer: ArchiveMaterializer) -> LibraryOutcome:
        assert self.config is not None and self.token is not None
        outcome = LibraryOutcome(library=library)

        try:
            link: str = locator.request_download_link(self.token, library.id)
        except RequestFailedError as exc:
            log.warning(f'Unable to request download link for library ``{library.name}``; {exc}')
            outcome.link_error = str(exc)
            return outcome
        self._advance(RunState.LINK_REQUESTED)

        try:
            outcome.entries = materializer.materialize(self.config.output_dir, link)
        except (FetchFailedError, ExtractFailedError) as exc:
            log.warning(f'Unable to download library ``{library.name}``; {exc}')
            outcome.archive_error = str(exc)
            return outcome
        finally:
            outcome.archive_size = materializer.last_archive_size
        self._advance(RunState.MATERIALIZED)

        failed: list[EntryResult] = outcome.failed_entries
        if failed:
            log.warning(f'library ``{library.name}``: {len(failed)} of {len(outcome.entries)} entries failed')
        log.info(
            f'library ``{library.name}``: {len(outcome.entries) - len(failed)} entries extracted '
            f'({humanize.naturalsize(outcome.archive_size or 0)} archive)'
        )
        return outcome

    def run(self) -> RunReport:
        libraries: list[Library] = self.setup()
        report = RunReport(libraries=list(libraries))

        locator = ArchiveLocator(self.client, UrlBuilder(self.config.url))  # type: ignore[union-attr]
        materializer = ArchiveMaterializer(self.client)
        for library in tqdm(libraries, total=len(libraries), desc='Syncing libraries', disable=not self.show_progress):
            report.outcomes.append(self.sync_library(library, locator, materializer))

        self._advance(RunState.DONE)
        return report


## output -----------------------------------------------------------
def format_summary(report: RunReport) -> list[str]:
    """
    Builds the lines printed at the end of a run; the last line always lists the full catalog.
    """
    lines: list[str] = []
    for outcome in report.outcomes:
        name: str = outcome.library.name
        if outcome.link_error is not None:
            lines.append(f'  {name}: FAILED (download link) -- {outcome.link_error}')
        elif outcome.archive_error is not None:
            lines.append(f'  {name}: FAILED (archive) -- {outcome.archive_error}')
        else:
            written: int = sum(1 for e in outcome.entries if e.status == 'written')
            size: str = humanize.naturalsize(outcome.archive_size or 0)
            line: str = f'  {name}: {written} file(s) from {size} archive'
            if outcome.failed_entries:
                line += f', {len(outcome.failed_entries)} entry error(s)'
            lines.append(line)
    lines.append('Libraries: ' + ', '.join(str(library) for library in report.libraries))
    return lines


class CLI:
    """
    Manages command-line parsing for the script entrypoint.
    """

    @staticmethod
    def build_parser() -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(description='Download and extract every library from a file-hosting server.')
        parser.add_argument(
            '--config', default=CONFIG_FILENAME, help=f'Path to the INI config file (default: {CONFIG_FILENAME})'
        )
        parser.add_argument('--output-dir', default=None, help='Optional. Overrides the `output` setting in the config file.')
        parser.add_argument('--no-progress', action='store_true', help='Optional. Disables the progress bar.')
        return parser

    @staticmethod
    def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
        return CLI.build_parser().parse_args(argv)


def main(argv: list[str] | None = None, *, transport: httpx.BaseTransport | None = None) -> int:
    """
    Parses args, runs the sync, prints the summary.

    Returns 1 when a setup step fails (message on stderr); otherwise 0, even if some libraries failed.

    Called by: dundermain
    """
    args: argparse.Namespace = CLI.parse_args(argv)
    output_override: Path | None = Path(args.output_dir).expanduser() if args.output_dir else None

    ## create httpx client (headers, timeouts); no retries ----------
    headers: dict[str, str] = {'user-agent': USER_AGENT}
    timeout: httpx.Timeout = httpx.Timeout(connect=30.0, read=300.0, write=60.0, pool=30.0)
    with httpx.Client(headers=headers, timeout=timeout, follow_redirects=True, transport=transport) as client:
        orchestrator = RunOrchestrator(
            client, Path(args.config), output_dir_override=output_override, show_progress=not args.no_progress
        )
        try:
            report: RunReport = orchestrator.run()
        except FatalRunError as exc:
            log.error(f'run aborted at state ``{exc.failed_state.name}``; {exc}')
            print(str(exc), file=sys.stderr)
            return 1

    ## wrap up output -----------------------------------------------
    for line in format_summary(report):
        print(line)
    return 0

    ## end def main()


if __name__ == '__main__':
    raise SystemExit(main())
