# vm-image-sync: Keep a rolling window of daily virtual machine image downloads.
#
# Author: Peter Odding <peter@peterodding.com>
# Last Change: October 19, 2026

"""
Usage: vm-image-sync [OPTIONS] IMAGE_TYPE

Download the most recent virtual machine image from a build server and keep
a rolling window of daily snapshots of it. IMAGE_TYPE is one of the values
`kvm', `vmware' or `vhd'.

The first download of an image uses lftp (which fetches the image over
multiple connections), subsequent downloads use rsync so that only changed
image blocks are transferred. The downloaded image is kept in the hidden
directory `.current_image' in the target directory and copied from there to a
directory named after the build. Image files that are newer than the
downloaded image (e.g. because a virtual machine is using them) are never
overwritten.

The password for the build server is read from standard input. When standard
input is a terminal you'll be prompted for the password, otherwise the first
line of input is used, for example:

  $ echo mypassword | vm-image-sync kvm

To download a new image every day at 4 AM use a crontab entry like this:

  0 4 * * * echo password | vm-image-sync vmware >> ~/vm-images/vm-image-sync.log 2>&1

Supported options:

  -f, --fork=FORK

    Select the build fork (e.g. `1.0' or `2.0'). The fork is a subdirectory of
    the source directory unless --no-fork-directory is given.

  -b, --build=BUILD

    Select the build directory to download. Build directories whose name
    contains BUILD are candidates, the most recent candidate is downloaded.
    BUILD can also be a shell pattern. By default the most recent build is
    downloaded.

  -t, --target=DIRECTORY

    The target (destination) directory. This directory must exist. Defaults
    to ~/vm-images.

  -s, --source=DIRECTORY

    The directory on the build server that contains the build directories.

  -k, --keep=COUNT

    The number of daily images to keep (defaults to 7). COUNT can also be an
    expression that evaluates to a number (e.g. `7 * 2').

  -u, --user=NAME

    The user name used to log in to the build server. Defaults to the name
    of the current user.

  -h, --host=NAME

    The host name of the build server. Use `localhost' to download from a
    local directory (no password is needed in this case).

  -p, --protocol=NAME

    Force the use of a protocol, NAME is either `rsync' or `lftp'. By default
    lftp is used for the first download and rsync for subsequent downloads.

  --sftp

    Make lftp connect using SFTP instead of FTP.

  --no-fork-directory

    Don't append the fork to the source directory (temporary build servers
    publish builds directly in the source directory).

  -c, --config=FILENAME

    Load configuration from FILENAME. If this option isn't given the following
    default locations are searched for configuration files:

    - /etc/vm-image-sync.ini and /etc/vm-image-sync.d/*.ini
    - ~/.vm-image-sync.ini and ~/.vm-image-sync.d/*.ini
    - ~/.config/vm-image-sync.ini and ~/.config/vm-image-sync.d/*.ini

    Options in the [default] section apply to all image types, options in a
    section named after the image type (e.g. [kvm]) override them. Command
    line options override configuration files.

  -n, --dry-run

    Don't make any changes, just print what would be done. The build server
    is still contacted to select the build directory.

  -v, --verbose

    Increase logging verbosity (can be repeated).

  -q, --quiet

    Decrease logging verbosity (can be repeated).

  --help

    Show this message and exit.
"""

# Standard library modules.
import getopt
import getpass
import sys

# External dependencies.
import coloredlogs
from humanfriendly.terminal import connected_to_terminal, usage
from verboselogs import VerboseLogger

# Modules included in our package.
from vm_image_sync import (
    CONFIG_OPTIONS,
    ImageSync,
    ImageSyncError,
    SyncConfig,
    UsageError,
    coerce_image_type,
    load_config_file,
)

# Initialize a logger.
logger = VerboseLogger(__name__)

OPTION_TABLE = {
    '-f': 'fork', '--fork': 'fork',
    '-b': 'build', '--build': 'build',
    '-t': 'destination-directory', '--target': 'destination-directory',
    '-s': 'source-directory', '--source': 'source-directory',
    '-k': 'keep', '--keep': 'keep',
    '-u': 'user', '--user': 'user',
    '-h': 'host', '--host': 'host',
    '-p': 'protocol', '--protocol': 'protocol',
}
"""
A dictionary that maps command line options that take a value to the names of
configuration options (the keys of :data:`~vm_image_sync.CONFIG_OPTIONS`,
which define the property to set and how to coerce the value).
"""


def main():
    """Command line interface for the ``vm-image-sync`` program."""
    coloredlogs.install(syslog=True)
    # Command line option defaults.
    config_file = None
    kw = {}
    # Parse the command line arguments.
    try:
        options, arguments = getopt.getopt(sys.argv[1:], 'f:b:t:s:k:u:h:p:c:nvq', [
            'fork=', 'build=', 'target=', 'source=', 'keep=', 'user=', 'host=',
            'protocol=', 'sftp', 'no-fork-directory', 'config=', 'dry-run',
            'verbose', 'quiet', 'help',
        ])
        for option, value in options:
            if option in OPTION_TABLE:
                name, coerce = CONFIG_OPTIONS[OPTION_TABLE[option]]
                kw[name] = coerce(value)
            elif option == '--sftp':
                kw['url_scheme'] = 'sftp'
            elif option == '--no-fork-directory':
                kw['fork_in_path'] = False
            elif option in ('-c', '--config'):
                config_file = value
            elif option in ('-n', '--dry-run'):
                logger.info("Performing a dry run (because of %s option) ..", option)
                kw['dry_run'] = True
            elif option in ('-v', '--verbose'):
                coloredlogs.increase_verbosity()
            elif option in ('-q', '--quiet'):
                coloredlogs.decrease_verbosity()
            elif option == '--help':
                usage(__doc__)
                return
            else:
                assert False, "Unhandled option! (programming error)"
        if not arguments:
            usage(__doc__)
            return
        if len(arguments) > 1:
            raise UsageError("Expected one image type, got %i arguments instead!" % len(arguments))
        image_type = coerce_image_type(arguments[0])
        # Command line options override the configuration file(s).
        settings = load_config_file(configuration_file=config_file, image_type=image_type)
        settings.update(kw)
        config = SyncConfig(image_type=image_type, **settings)
        logger.verbose("Configuration: %r", config)
        program = ImageSync(config)
        program.check_environment()
        if program.needs_password:
            program.password = read_password(config)
    except ImageSyncError as e:
        logger.error("%s", e)
        sys.exit(e.returncode)
    except Exception as e:
        logger.error("%s", e)
        sys.exit(1)
    # Download the image, promote it and rotate old snapshots.
    try:
        program.run()
    except ImageSyncError as e:
        logger.error("%s", e)
        sys.exit(e.returncode)


def read_password(config):
    """
    Read the password for the build server from standard input.

    :param config: A :class:`~vm_image_sync.SyncConfig` object.
    :returns: The password (a string).

    When standard input is connected to a terminal the user is prompted for
    the password (without echo), otherwise the first line of input is used.
    """
    if connected_to_terminal(sys.stdin):
        return getpass.getpass("%s@%s's password: " % (config.user, config.host))
    logger.verbose("Reading password for %s@%s from standard input ..", config.user, config.host)
    return sys.stdin.readline().rstrip('\r\n')
