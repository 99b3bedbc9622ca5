# vm-image-sync: Keep a rolling window of daily virtual machine image downloads.
#
# Author: Peter Odding <peter@peterodding.com>
# Last Change: October 19, 2026

"""
Listing of build directories and preparation of transfer commands.

The build server is only ever accessed through external programs: lftp_ is
used to list the build directories and for the first (full) download, rsync_
(wrapped in sshpass_ to supply the password) is used for incremental
downloads. The password is written to the standard input of these programs
once, it never appears on a command line.

.. _lftp: https://lftp.yar.ru/
.. _rsync: https://rsync.samba.org/
.. _sshpass: https://sourceforge.net/projects/sshpass/
"""

# Standard library modules.
import datetime
import fnmatch
import os
import posixpath

# External dependencies.
from dateutil import parser as date_parser
from executor.contexts import LocalContext
from humanfriendly import format_path
from natsort import natsort
from property_manager import PropertyManager, key_property
from verboselogs import VerboseLogger

# Initialize a logger for this module.
logger = VerboseLogger(__name__)

LISTING_TIME_STYLE = '%Y-%m-%dT%H:%M:%S'
"""The ``--time-style`` used for directory listings (a :func:`~time.strftime()` format string)."""


class BuildDirectory(PropertyManager):

    """:class:`BuildDirectory` objects represent a build directory on the build server."""

    key_properties = 'timestamp', 'pathname'

    @key_property
    def pathname(self):
        """The pathname of the build directory on the build server (a string)."""

    @key_property
    def timestamp(self):
        """The modification time of the build directory (a :class:`~datetime.datetime` object)."""

    @property
    def name(self):
        """The name of the build directory (a string like '1.0-298')."""
        return posixpath.basename(self.pathname.rstrip('/'))


def parse_listing(output):
    """
    Parse the output of ``lftp cls --date``.

    :param output: The output of the listing command (a string).
    :returns: A list of :class:`BuildDirectory` objects.

    Every line is expected to contain a timestamp followed by a pathname.
    Lines that don't match this format (e.g. informational messages from
    lftp) are logged and ignored, as are entries that aren't directories
    (the listing is requested with ``--classify`` so directories end in a
    slash).
    """
    builds = []
    for line in output.splitlines():
        # Build directory names never contain whitespace.
        tokens = line.split()
        if len(tokens) < 2:
            if tokens:
                logger.debug("Ignoring listing line without timestamp: %r", line)
            continue
        try:
            timestamp = date_parser.parse(' '.join(tokens[:-1]))
        except (ValueError, OverflowError):
            logger.debug("Ignoring listing line with invalid timestamp: %r", line)
            continue
        if not tokens[-1].endswith('/'):
            logger.debug("Ignoring listing entry (not a directory): %r", line)
            continue
        builds.append(BuildDirectory(pathname=tokens[-1].rstrip('/'), timestamp=timestamp))
    return builds


def list_local_builds(directory):
    """
    List the build directories in a local directory.

    :param directory: The pathname of the directory (a string).
    :returns: A list of :class:`BuildDirectory` objects.
    """
    builds = []
    for entry in os.listdir(directory):
        pathname = os.path.join(directory, entry)
        if os.path.isdir(pathname):
            builds.append(BuildDirectory(
                pathname=pathname,
                timestamp=datetime.datetime.fromtimestamp(os.path.getmtime(pathname)),
            ))
    return builds


def list_builds(config, password=None, context=None):
    """
    List the build directories on the build server.

    :param config: A :class:`~vm_image_sync.SyncConfig` object.
    :param password: The password for the build server (a string or :data:`None`).
    :param context: The execution context used to run lftp (defaults to a
                    :class:`~executor.contexts.LocalContext` object).
    :returns: A list of :class:`BuildDirectory` objects.
    :raises: :exc:`~executor.ExternalCommandFailed` when lftp fails.

    When :attr:`~vm_image_sync.SyncConfig.host` is 'localhost' the source
    directory is listed directly.
    """
    if config.is_local:
        logger.verbose("Listing local directory %s ..", format_path(config.remote_root))
        return list_local_builds(config.remote_root)
    context = context or LocalContext()
    listing_command = ' '.join([
        'cls', '-1', '-q', '--classify', '--date',
        '--time-style=%s' % quote_lftp_argument(LISTING_TIME_STYLE),
        '--sort=date', quote_lftp_argument(config.remote_root.rstrip('/') + '/'),
    ])
    output = context.capture('lftp', input=generate_lftp_script(config, password, listing_command))
    return parse_listing(output)


def select_build(builds, pattern=''):
    """
    Select the most recent build directory that matches a pattern.

    :param builds: A list of :class:`BuildDirectory` objects.
    :param pattern: A substring of the build directory name or (when it
                    contains wildcards) an :mod:`fnmatch` pattern. The empty
                    string matches all build directories.
    :returns: A :class:`BuildDirectory` object or :data:`None`.

    Build directories with the same modification time are ordered by name
    (using natural order) and the last one is selected.
    """
    if any(c in pattern for c in '*?['):
        candidates = [b for b in builds if fnmatch.fnmatch(b.name, pattern)]
    else:
        candidates = [b for b in builds if pattern in b.name]
    if not candidates:
        return None
    # Rank the candidates by their position in natural order.
    rank = dict((name, i) for i, name in enumerate(natsort([b.name for b in candidates])))
    return max(candidates, key=lambda b: (b.timestamp, rank[b.name]))


def prepare_transfer(config, build, protocol, password=None, context=None):
    """
    Prepare the command that downloads an image into the staging directory.

    :param config: A :class:`~vm_image_sync.SyncConfig` object.
    :param build: The :class:`BuildDirectory` to download.
    :param protocol: The string 'rsync' or 'lftp'.
    :param password: The password for the build server (a string or :data:`None`).
    :param context: The execution context used to run the command (defaults
                    to a :class:`~executor.contexts.LocalContext` object).
    :returns: An :class:`~executor.ExternalCommand` object that hasn't been
              started yet.
    """
    context = context or LocalContext()
    source = posixpath.join(build.pathname, config.image_subdirectory)
    target = config.staging_directory
    if protocol == 'rsync':
        command = ['rsync'] + list(config.rsync_options)
        if config.is_local:
            command.extend([source + '/', target + '/'])
            return context.prepare(*command)
        command.extend(['%s@%s:%s/' % (config.user, config.host, source), target + '/'])
        # Let sshpass read the password from its standard input.
        return context.prepare('sshpass', '-d', '0', *command, input=(password or '') + '\n')
    else:
        mirror_command = ' '.join([
            'mirror', '--use-pget-n=%i' % config.mirror_connections,
            quote_lftp_argument(source), quote_lftp_argument(target),
        ])
        return context.prepare('lftp', input=generate_lftp_script(config, password, mirror_command))


def generate_lftp_script(config, password, *commands):
    """
    Generate an lftp command script.

    :param config: A :class:`~vm_image_sync.SyncConfig` object.
    :param password: The password for the build server (a string or :data:`None`).
    :param commands: One or more lftp commands (strings).
    :returns: The script (a string) which opens a connection to the build
              server, runs the given commands and exits.
    """
    if config.is_local:
        lines = ['open file:///']
    else:
        credentials = config.user if password is None else '%s,%s' % (config.user, password)
        url = '%s://%s' % (config.url_scheme, config.host)
        lines = ['open -u %s %s' % (quote_lftp_argument(credentials), url)]
    lines.extend(commands)
    lines.append('exit')
    return '\n'.join(lines) + '\n'


def quote_lftp_argument(value):
    """
    Quote a string for the lftp command parser.

    :param value: The string to quote.
    :returns: The quoted string.
    """
    return '"%s"' % value.replace('\\', '\\\\').replace('"', '\\"')
