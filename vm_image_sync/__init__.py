# vm-image-sync: Keep a rolling window of daily virtual machine image downloads.
#
# Author: Peter Odding <peter@peterodding.com>
# Last Change: October 19, 2026

"""
Simple to use Python API for daily downloads of virtual machine images.

The :mod:`vm_image_sync` module contains the Python API of the `vm-image-sync`
package. The configuration of a run is contained in the :class:`SyncConfig`
class and the steps of a run are implemented by the :class:`ImageSync` class.
The retention policy (:func:`evict()`) and the promotion step
(:func:`promote()`) are plain functions so that they can be reused on their
own.
"""

# Standard library modules.
import contextlib
import datetime
import fcntl
import fnmatch
import getpass
import numbers
import os
import posixpath
import shlex
import shutil
import stat

# External dependencies.
from executor import ExternalCommandFailed
from executor.contexts import LocalContext
from humanfriendly import Timer, coerce_boolean, format_path, format_size, parse_path, pluralize
from humanfriendly.text import concatenate, split
from natsort import natsort
from property_manager import (
    PropertyManager,
    key_property,
    lazy_property,
    mutable_property,
    required_property,
)
from simpleeval import simple_eval
from update_dotdee import ConfigLoader
from verboselogs import VerboseLogger

# Modules included in our package.
from vm_image_sync.remote import list_builds, prepare_transfer, select_build

# Semi-standard module versioning.
__version__ = '1.0'

# Initialize a logger for this module.
logger = VerboseLogger(__name__)

IMAGE_TYPES = dict(kvm='KVM', vmware='OVA', vhd='VHD')
"""
A dictionary with the supported image types (the strings 'kvm', 'vmware' and
'vhd') as keys and the names of the corresponding subdirectories of a build
directory as values.
"""

SUPPORTED_PROTOCOLS = ('rsync', 'lftp')
"""
The supported transfer protocols (a tuple of strings):

- 'rsync' is used for incremental downloads (only changed image blocks are
  transferred into the staging directory).
- 'lftp' is used for the first download because its ``mirror`` command can
  fetch a single large file over multiple connections.
"""

SUPPORTED_URL_SCHEMES = ('ftp', 'sftp')
"""The URL schemes that lftp can use to connect to the build server (a tuple of strings)."""

DEFAULT_DESTINATION_DIRECTORY = '~/vm-images'
"""The default destination directory (a string)."""

DEFAULT_MAX_SNAPSHOTS = 7
"""The default number of daily snapshots to keep (an integer)."""

DEFAULT_RSYNC_OPTIONS = ['-av', '--progress', '--sparse']
"""The default command line options for rsync (a list of strings)."""

DEFAULT_MIRROR_CONNECTIONS = 5
"""The default number of parallel connections used by ``lftp mirror`` (an integer)."""

DEFAULT_INSTALLER_SCRIPTS = ['install.sh']
"""Filename patterns of installer scripts that need execute permission (a list of strings)."""

DEFAULT_REMOVAL_COMMAND = ['rm', '-r']
"""The default removal command (a list of strings)."""

STAGING_DIRECTORY_NAME = '.current_image'
"""
The name of the hidden staging directory in the destination directory (a string).

The staging directory holds the most recently downloaded image and is
updated in place by each run, which is what makes incremental downloads
using rsync possible.
"""

LOCK_FILE_NAME = '.vm-image-sync.lock'
"""The name of the lock file in the destination directory (a string)."""

DIRECTORY_MODE = stat.S_IRWXU | stat.S_IRWXG
"""Permission bits added to promoted directories (read, write and search for owner and group)."""

FILE_MODE = stat.S_IRUSR | stat.S_IWUSR | stat.S_IRGRP | stat.S_IWGRP
"""Permission bits added to promoted files (read and write for owner and group)."""

EXECUTABLE_MODE = stat.S_IXUSR | stat.S_IXGRP
"""Permission bits added to promoted installer scripts (execute for owner and group)."""


class ImageSyncError(Exception):

    """Base class for the errors that abort a run."""

    returncode = 1
    """The exit code reported by the command line interface (an integer)."""


class UsageError(ImageSyncError, ValueError):

    """Raised when an invalid image type, protocol or other option value is given."""


class DestinationMissing(ImageSyncError):

    """Raised when the destination directory doesn't exist."""


class BuildNotFound(ImageSyncError):

    """Raised when no remote build directory matches the requested build."""


class LockContention(ImageSyncError):

    """Raised when another run holds the lock on the destination directory."""


class RemoteCommandFailed(ImageSyncError):

    """Raised when the remote directory listing or a transfer fails."""

    def __init__(self, message, returncode):
        """
        Initialize a :class:`RemoteCommandFailed` object.

        :param message: The error message (a string).
        :param returncode: The exit code of the external command (an integer).
        """
        super(RemoteCommandFailed, self).__init__(message)
        self.returncode = returncode


class TransferFailed(RemoteCommandFailed):

    """Raised when the transfer program exits with a nonzero exit code."""


def coerce_image_type(value):
    """
    Coerce a string to a supported image type.

    :param value: The image type given by the user (a string).
    :returns: One of the keys of :data:`IMAGE_TYPES` (a string).
    :raises: :exc:`UsageError` when the image type isn't supported.
    """
    normalized = value.strip().lower() if isinstance(value, str) else value
    if normalized not in IMAGE_TYPES:
        msg = "Invalid image type %r! (supported image types are %s)"
        raise UsageError(msg % (value, concatenate(map(repr, sorted(IMAGE_TYPES)))))
    return normalized


def coerce_protocol(value):
    """
    Coerce a string to a supported transfer protocol.

    :param value: The protocol given by the user (a string or :data:`None`).
    :returns: One of the strings in :data:`SUPPORTED_PROTOCOLS` or :data:`None`
              (which means the protocol is selected automatically).
    :raises: :exc:`UsageError` when the protocol isn't supported.
    """
    if value is None or not value.strip():
        return None
    normalized = value.strip().lower()
    if normalized not in SUPPORTED_PROTOCOLS:
        msg = "Invalid protocol %r! (supported values are %s)"
        raise UsageError(msg % (value, concatenate(map(repr, SUPPORTED_PROTOCOLS))))
    return normalized


def coerce_url_scheme(value):
    """
    Coerce a string to a URL scheme supported by lftp.

    :param value: The URL scheme (a string).
    :returns: One of the strings in :data:`SUPPORTED_URL_SCHEMES`.
    :raises: :exc:`UsageError` when the scheme isn't supported.
    """
    normalized = value.strip().lower()
    if normalized not in SUPPORTED_URL_SCHEMES:
        msg = "Invalid URL scheme %r! (supported values are %s)"
        raise UsageError(msg % (value, concatenate(map(repr, SUPPORTED_URL_SCHEMES))))
    return normalized


def coerce_snapshot_count(value):
    """
    Coerce the number of snapshots to keep to a positive integer.

    :param value: A number or an expression that can be evaluated to a number
                  (e.g. ``7 * 2``).
    :returns: A positive integer.
    :raises: :exc:`~exceptions.ValueError` when the value can't be coerced or
             isn't at least one.
    """
    # Numbers pass through untouched.
    if not isinstance(value, numbers.Number):
        # Other values are expected to be strings.
        if not isinstance(value, str):
            msg = "Expected string, got %s instead!"
            raise ValueError(msg % type(value))
        value = simple_eval(value.strip())
        if not isinstance(value, numbers.Number):
            msg = "Expected numeric result, got %s instead!"
            raise ValueError(msg % type(value))
    if isinstance(value, bool) or value != int(value):
        msg = "Expected a whole number of snapshots, got %r instead!"
        raise ValueError(msg % value)
    if value < 1:
        msg = "Refusing to keep %i snapshots! (at least one snapshot must be kept)"
        raise ValueError(msg % value)
    return int(value)


CONFIG_OPTIONS = {
    'host': ('host', str.strip),
    'user': ('user', str.strip),
    'source-directory': ('source_directory', str.strip),
    'destination-directory': ('destination_directory', parse_path),
    'fork': ('build_fork', str.strip),
    'build': ('build_pattern', str.strip),
    'keep': ('max_snapshots', coerce_snapshot_count),
    'protocol': ('protocol', coerce_protocol),
    'url-scheme': ('url_scheme', coerce_url_scheme),
    'fork-directory': ('fork_in_path', coerce_boolean),
    'rsync-options': ('rsync_options', shlex.split),
    'mirror-connections': ('mirror_connections', int),
    'installer-scripts': ('installer_scripts', split),
    'removal-command': ('removal_command', shlex.split),
}
"""
A dictionary that maps option names to tuples with two values each:

1. The name of a :class:`SyncConfig` property (a string).
2. A callable that coerces a string to the type of the property.

This table is used to parse configuration files and, via the table in
:mod:`vm_image_sync.cli`, the command line options.
"""


def load_config_file(configuration_file=None, image_type=None):
    """
    Load the options for a run from a configuration file.

    :param configuration_file: Override the pathname of the configuration file
                               to load (a string or :data:`None`).
    :param image_type: The image type to load options for (a string or
                       :data:`None`).
    :returns: A dictionary with keyword arguments for :class:`SyncConfig`.
    :raises: :exc:`~exceptions.ValueError` when `configuration_file` is given
             but doesn't exist or can't be loaded.

    When `configuration_file` isn't given :class:`~update_dotdee.ConfigLoader`
    is used to search for configuration files in the following locations:

    - ``/etc/vm-image-sync.ini`` and ``/etc/vm-image-sync.d/*.ini``
    - ``~/.vm-image-sync.ini`` and ``~/.vm-image-sync.d/*.ini``
    - ``~/.config/vm-image-sync.ini`` and ``~/.config/vm-image-sync.d/*.ini``

    The options in the ``[default]`` section apply to all image types, the
    options in a section named after the image type (e.g. ``[kvm]``) override
    them. The option names are the keys of :data:`CONFIG_OPTIONS`, unknown
    options are reported and ignored.
    """
    if configuration_file:
        loader = ConfigLoader(available_files=[configuration_file], strict=True)
    else:
        loader = ConfigLoader(program_name='vm-image-sync', strict=False)
    options = {}
    sections = ['default']
    if image_type:
        sections.append(image_type)
    for section in sections:
        if section in loader.section_names:
            logger.verbose("Loading configuration section [%s] ..", section)
            for name, value in dict(loader.get_options(section)).items():
                if name in CONFIG_OPTIONS:
                    property_name, coerce = CONFIG_OPTIONS[name]
                    options[property_name] = coerce(value)
                else:
                    logger.warning("Ignoring unknown option %r in section [%s].", name, section)
    return options


def collect_snapshots(directory, exclude=()):
    """
    Collect the snapshot directories in the destination directory.

    :param directory: The pathname of the destination directory (a string).
    :param exclude: An iterable of entry names to ignore (e.g. the snapshot
                    that was just promoted).
    :returns: A :class:`list` of :class:`Snapshot` objects sorted by
              modification time (oldest first).

    Hidden entries (like the staging directory and the lock file) and regular
    files are ignored. The entries are sorted by name (using natural order)
    before they are sorted by modification time, so snapshots that were
    modified at the same time keep their listing order.
    """
    snapshots = []
    for entry in natsort(os.listdir(directory)):
        pathname = os.path.join(directory, entry)
        if entry.startswith('.'):
            logger.debug("Ignoring hidden entry: %s", pathname)
        elif entry in exclude:
            logger.debug("Ignoring excluded entry: %s", pathname)
        elif not os.path.isdir(pathname):
            logger.debug("Ignoring entry (not a directory): %s", pathname)
        else:
            snapshots.append(Snapshot(
                pathname=pathname,
                timestamp=datetime.datetime.fromtimestamp(os.path.getmtime(pathname)),
            ))
    return sorted(snapshots, key=lambda s: s.timestamp)


def evict(directories, max_snapshots):
    """
    Select the snapshots that exceed the retention limit.

    :param directories: A list of snapshots sorted by modification time
                        (oldest first), e.g. the result of
                        :func:`collect_snapshots()`.
    :param max_snapshots: The maximum number of snapshots to keep (any value
                          accepted by :func:`coerce_snapshot_count()`).
    :returns: A list with the oldest entries of `directories`, so that at most
              `max_snapshots` entries remain. When there are no more than
              `max_snapshots` entries the list is empty.
    """
    excess = len(directories) - coerce_snapshot_count(max_snapshots)
    return list(directories[:excess]) if excess > 0 else []


def promote(staging_directory, target_directory, installer_scripts=DEFAULT_INSTALLER_SCRIPTS):
    """
    Copy a downloaded image from the staging directory into a snapshot directory.

    :param staging_directory: The pathname of the staging directory (a string).
    :param target_directory: The pathname of the snapshot directory (a string).
    :param installer_scripts: Filename patterns of files that should be made
                              executable (a list of strings).
    :returns: A list with the pathnames of the files that were copied.
    :raises: :exc:`~exceptions.ValueError` when the staging directory doesn't
             exist.

    Files are only copied when the destination doesn't exist yet or is older
    than the file in the staging directory. The image in the snapshot
    directory may be in use by a running virtual machine, so a destination
    that is newer than (or as new as) the downloaded file is never
    overwritten. Copies are not sparse and keep the modification time of the
    source, so promoting an unchanged staging directory again copies nothing.

    After copying :func:`fix_permissions()` is used to make the snapshot
    usable by the hypervisor.
    """
    if not os.path.isdir(staging_directory):
        msg = "The staging directory %s doesn't exist!"
        raise ValueError(msg % format_path(staging_directory))
    timer = Timer()
    copied_files = []
    copied_bytes = 0
    logger.info("Copying image files to %s ..", format_path(target_directory))
    for root, dirs, files in os.walk(staging_directory):
        dirs.sort()
        relative_path = os.path.relpath(root, staging_directory)
        destination = os.path.normpath(os.path.join(target_directory, relative_path))
        if not os.path.isdir(destination):
            os.makedirs(destination)
        for filename in sorted(files):
            source_file = os.path.join(root, filename)
            target_file = os.path.join(destination, filename)
            if is_up_to_date(source_file, target_file):
                logger.verbose("Skipping %s (destination isn't older).", format_path(target_file))
                continue
            logger.verbose("Copying %s ..", format_path(target_file))
            shutil.copy2(source_file, target_file)
            copied_files.append(target_file)
            copied_bytes += os.path.getsize(target_file)
    fix_permissions(target_directory, installer_scripts)
    logger.info("Copied %s (%s) in %s.", pluralize(len(copied_files), "file"), format_size(copied_bytes), timer)
    return copied_files


def is_up_to_date(source_file, target_file):
    """
    Check whether a promoted file is at least as new as its source.

    :param source_file: The pathname of the file in the staging directory (a string).
    :param target_file: The pathname of the file in the snapshot directory (a string).
    :returns: :data:`True` if `target_file` exists and its modification time
              isn't older than that of `source_file`, :data:`False` otherwise.
    """
    return os.path.exists(target_file) and os.path.getmtime(target_file) >= os.path.getmtime(source_file)


def fix_permissions(directory, installer_scripts=DEFAULT_INSTALLER_SCRIPTS):
    """
    Make a snapshot directory usable by the hypervisor.

    :param directory: The pathname of the snapshot directory (a string).
    :param installer_scripts: Filename patterns of files that should be made
                              executable (a list of strings).

    KVM complains about missing search permission unless every directory is
    readable, writable and searchable, so :data:`DIRECTORY_MODE` is added to
    all directories, :data:`FILE_MODE` to all files and
    :data:`EXECUTABLE_MODE` to installer scripts.
    """
    for root, dirs, files in os.walk(directory):
        add_permissions(root, DIRECTORY_MODE)
        for filename in files:
            mode = FILE_MODE
            if any(fnmatch.fnmatch(filename, pattern) for pattern in installer_scripts):
                mode |= EXECUTABLE_MODE
            add_permissions(os.path.join(root, filename), mode)


def add_permissions(pathname, mode):
    """Add permission bits to a file or directory (without touching its other bits)."""
    current_mode = stat.S_IMODE(os.stat(pathname).st_mode)
    if (current_mode & mode) != mode:
        os.chmod(pathname, current_mode | mode)


@contextlib.contextmanager
def exclusive_lock(pathname):
    """
    Make sure only one run at a time uses a destination directory.

    :param pathname: The pathname of the lock file (a string).
    :raises: :exc:`LockContention` when the lock is held by another process.

    The lock is an advisory :func:`fcntl.flock()` lock that the operating
    system releases when the process exits, so a crashed run never leaves a
    stale lock behind.
    """
    with open(pathname, 'a') as handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except (BlockingIOError, PermissionError):
            msg = "Another run is using %s! (the lock file %s is held by another process)"
            raise LockContention(msg % (format_path(os.path.dirname(pathname)), format_path(pathname)))
        logger.debug("Acquired lock on %s.", format_path(pathname))
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class SyncConfig(PropertyManager):

    """
    The configuration of a run.

    A :class:`SyncConfig` object is created once, based on the command line
    options and configuration file(s), and then passed to every step of the
    run. The properties derived from other properties are computed on first
    access and cached, so the object shouldn't be changed after it's been
    handed to :class:`ImageSync`.
    """

    def __init__(self, **options):
        """
        Initialize a :class:`SyncConfig` object.

        :param options: Any keyword arguments are used to set the values of
                        instance properties. The values of :attr:`image_type`,
                        :attr:`max_snapshots` and :attr:`protocol` are
                        validated.
        """
        if 'image_type' in options:
            options['image_type'] = coerce_image_type(options['image_type'])
        if 'max_snapshots' in options:
            options['max_snapshots'] = coerce_snapshot_count(options['max_snapshots'])
        if 'protocol' in options:
            options['protocol'] = coerce_protocol(options['protocol'])
        super(SyncConfig, self).__init__(**options)

    @mutable_property
    def build_fork(self):
        """
        The build fork to download (a string like '1.0' or :data:`None`).

        When :attr:`fork_in_path` is :data:`True` the fork is appended to
        :attr:`source_directory` to find the build directories of the fork.
        """

    @mutable_property
    def build_pattern(self):
        """
        Select the build directory to download (a string, defaults to the empty string).

        Build directories whose name contains this string are candidates; if
        the string contains wildcards it is matched against the whole name
        using :mod:`fnmatch` instead. The most recent candidate is selected,
        so the default selects the most recent build.
        """
        return ''

    @mutable_property
    def destination_directory(self):
        """The local directory that holds the snapshots (a string, defaults to :data:`DEFAULT_DESTINATION_DIRECTORY`)."""
        return parse_path(DEFAULT_DESTINATION_DIRECTORY)

    @mutable_property
    def dry_run(self):
        """:data:`True` to only report what would be done, :data:`False` otherwise (the default)."""
        return False

    @mutable_property
    def fork_in_path(self):
        """
        :data:`True` if :attr:`build_fork` is a subdirectory of :attr:`source_directory` (the default).

        Temporary build servers publish their builds directly in the source
        directory, in that case set this to :data:`False`.
        """
        return True

    @required_property
    def host(self):
        """The host name of the build server (a string, 'localhost' for a local source directory)."""

    @required_property
    def image_type(self):
        """The type of image to download (one of the keys of :data:`IMAGE_TYPES`)."""

    @mutable_property
    def installer_scripts(self):
        """Filename patterns of installer scripts (a list of strings, defaults to :data:`DEFAULT_INSTALLER_SCRIPTS`)."""
        return list(DEFAULT_INSTALLER_SCRIPTS)

    @mutable_property
    def max_snapshots(self):
        """The number of daily snapshots to keep (a positive integer, defaults to :data:`DEFAULT_MAX_SNAPSHOTS`)."""
        return DEFAULT_MAX_SNAPSHOTS

    @mutable_property
    def mirror_connections(self):
        """The number of connections used by ``lftp mirror`` to fetch a file (an integer)."""
        return DEFAULT_MIRROR_CONNECTIONS

    @mutable_property
    def protocol(self):
        """
        The transfer protocol (one of the strings in :data:`SUPPORTED_PROTOCOLS` or :data:`None`).

        When this is :data:`None` the protocol is selected by
        :func:`ImageSync.select_protocol()`.
        """

    @mutable_property
    def removal_command(self):
        """The command used to remove old snapshots (a list of strings, defaults to :data:`DEFAULT_REMOVAL_COMMAND`)."""
        return list(DEFAULT_REMOVAL_COMMAND)

    @mutable_property
    def rsync_options(self):
        """The command line options for rsync (a list of strings, defaults to :data:`DEFAULT_RSYNC_OPTIONS`)."""
        return list(DEFAULT_RSYNC_OPTIONS)

    @required_property
    def source_directory(self):
        """The directory on the build server that contains the build directories (a string)."""

    @mutable_property
    def url_scheme(self):
        """The URL scheme used by lftp (one of the strings in :data:`SUPPORTED_URL_SCHEMES`, defaults to 'ftp')."""
        return 'ftp'

    @mutable_property
    def user(self):
        """The user name used to log in to the build server (a string, defaults to the current user)."""
        return getpass.getuser()

    @lazy_property
    def image_subdirectory(self):
        """The name of the image subdirectory of a build directory (a string like 'KVM')."""
        return IMAGE_TYPES[self.image_type]

    @lazy_property
    def is_local(self):
        """:data:`True` if :attr:`host` is 'localhost', :data:`False` otherwise."""
        return self.host == 'localhost'

    @lazy_property
    def remote_root(self):
        """The directory on the build server that is searched for build directories (a string)."""
        if self.build_fork and self.fork_in_path:
            return posixpath.join(self.source_directory, self.build_fork)
        return self.source_directory

    @lazy_property
    def staging_root(self):
        """The pathname of the hidden staging directory (a string)."""
        return os.path.join(self.destination_directory, STAGING_DIRECTORY_NAME)

    @lazy_property
    def staging_directory(self):
        """The pathname of the image subdirectory of the staging directory (a string)."""
        return os.path.join(self.staging_root, self.image_subdirectory)


class ImageSync(PropertyManager):

    """Python API for the ``vm-image-sync`` program."""

    def __init__(self, config, **options):
        """
        Initialize an :class:`ImageSync` object.

        :param config: Used to set :attr:`config`.
        :param options: Any keyword arguments are used to set the values of
                        instance properties that support assignment
                        (:attr:`password`).
        """
        options.update(config=config)
        super(ImageSync, self).__init__(**options)

    @required_property
    def config(self):
        """The configuration of the run (a :class:`SyncConfig` object)."""

    @lazy_property
    def context(self):
        """The execution context used to run external commands (a :class:`~executor.contexts.LocalContext` object)."""
        return LocalContext()

    @property
    def lock_file(self):
        """The pathname of the lock file in the destination directory (a string)."""
        return os.path.join(self.config.destination_directory, LOCK_FILE_NAME)

    @property
    def needs_password(self):
        """:data:`True` if a password is needed to log in to the build server, :data:`False` otherwise."""
        return not self.config.is_local

    @mutable_property(repr=False)
    def password(self):
        """
        The password used to log in to the build server (a string or :data:`None`).

        The password is only ever written to the standard input stream of the
        external programs that need it, it's never passed on a command line.
        """

    def run(self):
        """
        Download the most recent matching image, promote it and rotate old snapshots.

        :returns: The pathname of the snapshot directory (a string).
        :raises: :exc:`DestinationMissing`, :exc:`LockContention`,
                 :exc:`BuildNotFound`, :exc:`RemoteCommandFailed` or
                 :exc:`TransferFailed` when a step fails. Snapshots that
                 can't be removed don't cause an exception, they're reported
                 by :func:`rotate_snapshots()`.

        This function binds the steps of a run together: it calls
        :func:`check_environment()`, :func:`select_protocol()`,
        :func:`locate_build()`, :func:`transfer()`,
        :func:`promote_snapshot()` and :func:`rotate_snapshots()`.
        """
        timer = Timer()
        self.check_environment()
        protocol = self.select_protocol()
        with self.lock():
            build = self.locate_build()
            self.transfer(build, protocol)
            snapshot_directory = self.promote_snapshot(build)
            failures = self.rotate_snapshots()
        if failures:
            logger.warning("Failed to remove %s: %s", pluralize(len(failures), "old snapshot"),
                           concatenate(format_path(s.pathname) for s in failures))
        if self.config.dry_run:
            logger.info("Finished dry run in %s.", timer)
        else:
            logger.success("Image files downloaded to %s in %s.", format_path(snapshot_directory), timer)
        return snapshot_directory

    def check_environment(self):
        """
        Sanity check that the destination directory exists.

        :raises: :exc:`DestinationMissing` when the destination directory
                 doesn't exist.
        """
        if not os.path.isdir(self.config.destination_directory):
            msg = "Destination directory %s not found!"
            raise DestinationMissing(msg % format_path(self.config.destination_directory))
        logger.verbose("Confirmed that destination directory exists: %s",
                       format_path(self.config.destination_directory))

    @contextlib.contextmanager
    def lock(self):
        """Hold the lock on the destination directory (skipped in dry run mode)."""
        if self.config.dry_run:
            yield
        else:
            with exclusive_lock(self.lock_file):
                yield

    def select_protocol(self):
        """
        Select the transfer protocol.

        :returns: One of the strings in :data:`SUPPORTED_PROTOCOLS`.

        When :attr:`SyncConfig.protocol` is set it's used, otherwise rsync is
        selected when the staging directory exists (a subsequent download) and
        lftp is selected when it doesn't (the first download).
        """
        if self.config.protocol:
            logger.verbose("Using configured protocol: %s", self.config.protocol)
            return self.config.protocol
        elif os.path.isdir(self.config.staging_root):
            logger.info("Found previous download in %s, using rsync for incremental download.",
                        format_path(self.config.staging_root))
            return 'rsync'
        else:
            logger.info("No previous download found, using lftp for first download.")
            return 'lftp'

    def locate_build(self):
        """
        Find the build directory to download.

        :returns: A :class:`~vm_image_sync.remote.BuildDirectory` object.
        :raises: :exc:`BuildNotFound` when no build directory matches
                 :attr:`SyncConfig.build_pattern` (or the local source
                 directory doesn't exist), :exc:`RemoteCommandFailed`
                 when the directory listing fails.
        """
        location = '%s:%s' % (self.config.host, self.config.remote_root)
        logger.info("Searching for build directories in %s ..", location)
        try:
            builds = list_builds(self.config, self.password, context=self.context)
        except ExternalCommandFailed as e:
            msg = "Failed to list build directories in %s! (exit code %i)"
            raise RemoteCommandFailed(msg % (location, e.returncode), e.returncode)
        except OSError as e:
            msg = "Failed to list build directories in %s! (%s)"
            raise BuildNotFound(msg % (location, e.strerror or e))
        logger.verbose("Found %s in %s.", pluralize(len(builds), "build directory", "build directories"), location)
        build = select_build(builds, self.config.build_pattern)
        if not build:
            msg = "No image directory match for %r found in %s!"
            raise BuildNotFound(msg % (self.config.build_pattern, location))
        logger.info("Selected image directory: %s:%s", self.config.host, build.pathname)
        return build

    def transfer(self, build, protocol):
        """
        Download the image of a build into the staging directory.

        :param build: The :class:`~vm_image_sync.remote.BuildDirectory` to download.
        :param protocol: One of the strings in :data:`SUPPORTED_PROTOCOLS`.
        :raises: :exc:`TransferFailed` when the transfer program fails.
        """
        command = prepare_transfer(self.config, build, protocol, self.password, context=self.context)
        if self.config.dry_run:
            logger.info("Not downloading %s image using %s (dry run).", self.config.image_type, protocol)
            return
        if not os.path.isdir(self.config.staging_directory):
            os.makedirs(self.config.staging_directory)
        logger.info("Downloading %s image to %s using %s ..", self.config.image_type,
                    format_path(self.config.staging_directory), protocol)
        timer = Timer()
        try:
            command.wait()
        except ExternalCommandFailed as e:
            msg = "Download using %s failed with exit code %i!"
            raise TransferFailed(msg % (protocol, e.returncode), e.returncode)
        logger.info("Download time: %s.", timer)

    def snapshot_directory(self, build):
        """
        Get the pathname of the snapshot directory for a build.

        :param build: A :class:`~vm_image_sync.remote.BuildDirectory` object.
        :returns: The pathname of the image subdirectory of the snapshot (a string).
        """
        return os.path.join(self.config.destination_directory, build.name, self.config.image_subdirectory)

    def promote_snapshot(self, build):
        """
        Copy the staging directory into the snapshot directory of a build.

        :param build: A :class:`~vm_image_sync.remote.BuildDirectory` object.
        :returns: The pathname of the snapshot directory (a string).

        The staging directory is overwritten by the next download, the copy
        is what keeps the image around (see :func:`promote()`).
        """
        target_directory = self.snapshot_directory(build)
        if self.config.dry_run:
            logger.info("Not copying image files to %s (dry run).", format_path(target_directory))
        else:
            promote(self.config.staging_directory, target_directory, self.config.installer_scripts)
        return target_directory

    def rotate_snapshots(self):
        """
        Remove the oldest snapshots so that at most :attr:`SyncConfig.max_snapshots` remain.

        :returns: A list with the :class:`Snapshot` objects that couldn't be
                  removed (empty when all went well).
        """
        failures = []
        snapshots = collect_snapshots(self.config.destination_directory)
        expired = evict(snapshots, self.config.max_snapshots)
        if not expired:
            logger.verbose("Nothing to do! (found %s, keeping up to %i)",
                           pluralize(len(snapshots), "snapshot"), self.config.max_snapshots)
        for snapshot in expired:
            if self.config.dry_run:
                logger.info("Not deleting old image directory %s (dry run).", format_path(snapshot.pathname))
            elif not self.remove_snapshot(snapshot):
                failures.append(snapshot)
        return failures

    def remove_snapshot(self, snapshot):
        """
        Remove a snapshot directory.

        :param snapshot: A :class:`Snapshot` object.
        :returns: :data:`True` if the snapshot was removed, :data:`False` otherwise.

        The removal command is run without superuser privileges first (the
        snapshot was most likely created by the current user) and when that
        fails it's retried using ``sudo``.
        """
        timer = Timer()
        command = list(self.config.removal_command) + [snapshot.pathname]
        logger.info("Deleting old image directory %s ..", format_path(snapshot.pathname))
        try:
            self.context.execute(*command)
        except ExternalCommandFailed as e:
            logger.notice("Failed to delete %s (exit code %i), retrying with superuser privileges ..",
                          format_path(snapshot.pathname), e.returncode)
            try:
                self.context.execute(*command, sudo=True)
            except ExternalCommandFailed as e:
                logger.error("Failed to delete %s with superuser privileges! (exit code %i)",
                             format_path(snapshot.pathname), e.returncode)
                return False
        logger.verbose("Deleted %s in %s.", format_path(snapshot.pathname), timer)
        return True


class Snapshot(PropertyManager):

    """:class:`Snapshot` objects represent a daily download in the destination directory."""

    key_properties = 'timestamp', 'pathname'
    """
    Customize the ordering of :class:`Snapshot` objects.

    :class:`Snapshot` objects are ordered first by their :attr:`timestamp` and
    second by their :attr:`pathname`. This class variable overrides
    :attr:`~property_manager.PropertyManager.key_properties`.
    """

    @key_property
    def pathname(self):
        """The pathname of the snapshot directory (a string)."""

    @key_property
    def timestamp(self):
        """The modification time of the snapshot directory (a :class:`~datetime.datetime` object)."""

    @property
    def name(self):
        """The name of the snapshot directory (a string)."""
        return os.path.basename(self.pathname)
