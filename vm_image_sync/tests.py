# Test suite for the `vm-image-sync' Python package.
#
# Author: Peter Odding <peter@peterodding.com>
# Last Change: October 19, 2026

"""Test suite for the `vm-image-sync` package."""

# Standard library modules.
import configparser
import datetime
import logging
import os
import stat
import time

# External dependencies.
from humanfriendly.testing import CustomSearchPath, MockedProgram, TemporaryDirectory, TestCase, run_cli, touch

# The module we're testing.
from vm_image_sync import (
    STAGING_DIRECTORY_NAME,
    BuildNotFound,
    ImageSync,
    LockContention,
    SyncConfig,
    UsageError,
    coerce_image_type,
    coerce_protocol,
    coerce_snapshot_count,
    collect_snapshots,
    evict,
    exclusive_lock,
    load_config_file,
    promote,
)
from vm_image_sync.cli import main
from vm_image_sync.remote import (
    BuildDirectory,
    generate_lftp_script,
    parse_listing,
    prepare_transfer,
    quote_lftp_argument,
    select_build,
)

# Initialize a logger for this module.
logger = logging.getLogger(__name__)

SAMPLE_LISTING = """
2013-11-10T04:01:12 /ifs/projects/images/1.0/1.0-296/
2013-11-11T04:02:45 /ifs/projects/images/1.0/1.0-297/
cls: Access failed: 550 Permission denied
2013-11-12T04:00:09 /ifs/projects/images/1.0/1.0-298/
2013-11-12T03:10:00 /ifs/projects/images/1.0/1.0-298-debug/
2013-11-13T09:30:00 /ifs/projects/images/1.0/README.txt
"""


class ImageSyncTestCase(TestCase):

    """:mod:`unittest` compatible container for `vm-image-sync` tests."""

    def test_image_type_coercion(self):
        """Test coercion of image types."""
        assert coerce_image_type('kvm') == 'kvm'
        assert coerce_image_type(' VMware ') == 'vmware'
        assert coerce_image_type('vhd') == 'vhd'
        self.assertRaises(UsageError, coerce_image_type, 'docker')
        self.assertRaises(ValueError, coerce_image_type, None)

    def test_protocol_coercion(self):
        """Test coercion of transfer protocols."""
        assert coerce_protocol(None) is None
        assert coerce_protocol('') is None
        assert coerce_protocol('RSYNC') == 'rsync'
        assert coerce_protocol('lftp') == 'lftp'
        self.assertRaises(UsageError, coerce_protocol, 'ftp')

    def test_snapshot_count_coercion(self):
        """Test coercion of the number of snapshots to keep."""
        assert coerce_snapshot_count(7) == 7
        assert coerce_snapshot_count('7') == 7
        assert coerce_snapshot_count('7 * 2') == 14
        self.assertRaises(ValueError, coerce_snapshot_count, 0)
        self.assertRaises(ValueError, coerce_snapshot_count, '-1')
        self.assertRaises(ValueError, coerce_snapshot_count, 2.5)
        self.assertRaises(ValueError, coerce_snapshot_count, 'None')
        self.assertRaises(ValueError, coerce_snapshot_count, ['not', 'a', 'string'])

    def test_evict_within_limit(self):
        """Make sure nothing is evicted when the number of snapshots doesn't exceed the limit."""
        for max_snapshots in range(1, 10):
            for count in range(max_snapshots + 1):
                directories = ['day%i' % i for i in range(1, count + 1)]
                assert evict(directories, max_snapshots) == []

    def test_evict_oldest(self):
        """Make sure the oldest snapshots are evicted."""
        directories = ['day%i' % i for i in range(1, 11)]
        assert evict(directories, 7) == ['day1', 'day2', 'day3']
        for max_snapshots in range(1, 11):
            expired = evict(directories, max_snapshots)
            assert len(expired) == len(directories) - max_snapshots
            assert expired == directories[:len(expired)]
            # Evicting again from the remaining directories is a no-op.
            remaining = [d for d in directories if d not in expired]
            assert evict(remaining, max_snapshots) == []

    def test_collect_snapshots(self):
        """Test that snapshots are sorted by modification time and hidden entries are ignored."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            now = time.time()
            for name, age in (('b', 3), ('a', 2), ('c', 2), ('d', 1), (STAGING_DIRECTORY_NAME, 5)):
                pathname = os.path.join(root, name)
                os.mkdir(pathname)
                set_age(pathname, now, days=age)
            touch(os.path.join(root, 'vm-image-sync.log'))
            snapshots = collect_snapshots(root)
            # Ties in modification time keep the (natural) listing order.
            assert [s.name for s in snapshots] == ['b', 'a', 'c', 'd']
            assert [s.name for s in evict(snapshots, 2)] == ['b', 'a']
            # Excluded entries are never snapshots.
            assert [s.name for s in collect_snapshots(root, exclude=['a', 'd'])] == ['b', 'c']

    def test_promote_permissions(self):
        """Test that promoted directories and files get the required permissions."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            staging = os.path.join(root, 'staging')
            target = os.path.join(root, 'target')
            os.mkdir(staging)
            for filename in 'install.sh', 'disk.img':
                with open(os.path.join(staging, filename), 'w') as handle:
                    handle.write('%s contents\n' % filename)
                os.chmod(os.path.join(staging, filename), 0o400)
            copied_files = promote(staging, target)
            assert sorted(map(os.path.basename, copied_files)) == ['disk.img', 'install.sh']
            assert get_mode(target) & 0o770 == 0o770
            assert get_mode(os.path.join(target, 'disk.img')) & 0o660 == 0o660
            assert get_mode(os.path.join(target, 'install.sh')) & 0o770 == 0o770
            assert not get_mode(os.path.join(target, 'disk.img')) & stat.S_IXUSR

    def test_promote_subdirectories(self):
        """Test that nested directories are created and made searchable."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            staging = os.path.join(root, 'staging')
            target = os.path.join(root, 'target')
            os.makedirs(os.path.join(staging, 'disks'))
            touch(os.path.join(staging, 'disks', 'disk.img'))
            promote(staging, target)
            assert os.path.isfile(os.path.join(target, 'disks', 'disk.img'))
            assert get_mode(os.path.join(target, 'disks')) & 0o770 == 0o770

    def test_promote_preserves_newer_files(self):
        """Make sure promote() never overwrites a newer destination file."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            staging = os.path.join(root, 'staging')
            target = os.path.join(root, 'target')
            os.mkdir(staging)
            os.mkdir(target)
            source_file = os.path.join(staging, 'disk.img')
            target_file = os.path.join(target, 'disk.img')
            with open(source_file, 'w') as handle:
                handle.write('downloaded image\n')
            with open(target_file, 'w') as handle:
                handle.write('image in use by a virtual machine\n')
            now = int(time.time())
            os.utime(source_file, (now - 3600, now - 3600))
            os.utime(target_file, (now, now))
            assert promote(staging, target) == []
            with open(target_file) as handle:
                assert handle.read() == 'image in use by a virtual machine\n'
            assert os.path.getmtime(target_file) == now

    def test_promote_replaces_older_files(self):
        """Make sure promote() updates destination files that are older than the download."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            staging = os.path.join(root, 'staging')
            target = os.path.join(root, 'target')
            os.mkdir(staging)
            os.mkdir(target)
            source_file = os.path.join(staging, 'disk.img')
            target_file = os.path.join(target, 'disk.img')
            with open(target_file, 'w') as handle:
                handle.write('yesterday\n')
            with open(source_file, 'w') as handle:
                handle.write('today\n')
            now = time.time()
            os.utime(target_file, (now - 86400, now - 86400))
            os.utime(source_file, (now, now))
            assert promote(staging, target) == [target_file]
            with open(target_file) as handle:
                assert handle.read() == 'today\n'

    def test_promote_idempotent(self):
        """Make sure promoting an unchanged staging directory twice has no further effect."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            staging = os.path.join(root, 'staging')
            target = os.path.join(root, 'target')
            os.makedirs(os.path.join(staging, 'extra'))
            for filename in 'install.sh', 'disk.img', os.path.join('extra', 'notes.txt'):
                with open(os.path.join(staging, filename), 'w') as handle:
                    handle.write('%s contents\n' % filename)
            promote(staging, target)
            first_state = describe_tree(target)
            assert promote(staging, target) == []
            assert describe_tree(target) == first_state

    def test_promote_missing_staging_directory(self):
        """Make sure promote() refuses to run without a staging directory."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            self.assertRaises(ValueError, promote, os.path.join(root, 'missing'), os.path.join(root, 'target'))
            assert not os.path.exists(os.path.join(root, 'target'))

    def test_parse_listing(self):
        """Test parsing of remote directory listings."""
        builds = parse_listing(SAMPLE_LISTING)
        assert [b.name for b in builds] == ['1.0-296', '1.0-297', '1.0-298', '1.0-298-debug']
        assert 'README.txt' not in [b.name for b in builds]
        assert builds[0].pathname == '/ifs/projects/images/1.0/1.0-296'
        assert builds[0].timestamp == datetime.datetime(2013, 11, 10, 4, 1, 12)

    def test_select_build(self):
        """Test selection of the most recent matching build directory."""
        builds = parse_listing(SAMPLE_LISTING)
        assert select_build(builds).name == '1.0-298'
        assert select_build(builds, '297').name == '1.0-297'
        assert select_build(builds, 'debug').name == '1.0-298-debug'
        assert select_build(builds, '1.0-29[67]').name == '1.0-297'
        assert select_build(builds, '2.0') is None
        assert select_build([], '') is None

    def test_select_build_ties(self):
        """Test that ties in modification time are broken using natural order."""
        timestamp = datetime.datetime(2013, 11, 12, 4, 0, 0)
        builds = [BuildDirectory(pathname='/builds/1.0-%i' % n, timestamp=timestamp) for n in (99, 100, 98)]
        assert select_build(builds).name == '1.0-100'

    def test_lftp_quoting(self):
        """Test quoting of lftp command arguments."""
        assert quote_lftp_argument('plain') == '"plain"'
        assert quote_lftp_argument('say "hi"') == '"say \\"hi\\""'
        assert quote_lftp_argument('back\\slash') == '"back\\\\slash"'

    def test_lftp_script(self):
        """Test that the password is embedded in the lftp script (not in the command line)."""
        config = SyncConfig(image_type='kvm', host='builds.example.com', source_directory='/images', user='alice')
        script = generate_lftp_script(config, 'secret', 'mirror "a" "b"')
        assert script.splitlines() == [
            'open -u "alice,secret" ftp://builds.example.com',
            'mirror "a" "b"',
            'exit',
        ]
        sftp_config = SyncConfig(
            image_type='kvm', host='builds.example.com',
            source_directory='/images', user='alice', url_scheme='sftp',
        )
        assert 'sftp://builds.example.com' in generate_lftp_script(sftp_config, None)

    def test_prepare_rsync_transfer(self):
        """Test the rsync command line for incremental downloads."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            config = SyncConfig(
                image_type='vmware', host='builds.example.com', user='alice',
                source_directory='/images', destination_directory=root,
            )
            build = BuildDirectory(pathname='/images/1.0/1.0-298', timestamp=datetime.datetime.now())
            command = prepare_transfer(config, build, 'rsync', 'secret')
            assert command.command_line == [
                'sshpass', '-d', '0', 'rsync', '-av', '--progress', '--sparse',
                'alice@builds.example.com:/images/1.0/1.0-298/OVA/',
                os.path.join(root, STAGING_DIRECTORY_NAME, 'OVA') + '/',
            ]
            assert 'secret' not in ' '.join(command.command_line)

    def test_config_paths(self):
        """Test the pathnames derived from the configuration."""
        config = SyncConfig(
            image_type='vhd', host='builds.example.com', source_directory='/images',
            destination_directory='/srv/images', build_fork='2.0',
        )
        assert config.remote_root == '/images/2.0'
        assert config.staging_directory == os.path.join('/srv/images', STAGING_DIRECTORY_NAME, 'VHD')
        config = SyncConfig(
            image_type='vhd', host='builds.example.com', source_directory='/images',
            build_fork='2.0', fork_in_path=False,
        )
        assert config.remote_root == '/images'
        self.assertRaises(ValueError, SyncConfig, image_type='docker', host='localhost', source_directory='/')
        self.assertRaises(ValueError, SyncConfig, image_type='kvm', host='localhost', source_directory='/', max_snapshots=0)

    def test_config_file(self):
        """Test loading of options from a configuration file."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            config_file = os.path.join(root, 'vm-image-sync.ini')
            # A configuration file that doesn't exist is an error.
            self.assertRaises(ValueError, load_config_file, config_file)
            parser = configparser.RawConfigParser()
            parser.add_section('default')
            parser.set('default', 'host', 'builds.example.com')
            parser.set('default', 'keep', '3')
            parser.set('default', 'rsync-options', '-a --sparse')
            parser.add_section('kvm')
            parser.set('kvm', 'keep', '5')
            parser.set('kvm', 'fork-directory', 'no')
            with open(config_file, 'w') as handle:
                parser.write(handle)
            options = load_config_file(config_file, 'kvm')
            assert options['host'] == 'builds.example.com'
            assert options['max_snapshots'] == 5
            assert options['rsync_options'] == ['-a', '--sparse']
            assert options['fork_in_path'] is False
            assert load_config_file(config_file, 'vhd')['max_snapshots'] == 3

    def test_default_config_locations(self):
        """Make sure the default configuration file locations can be searched."""
        options = load_config_file(image_type='kvm')
        assert isinstance(options, dict)


    def test_usage(self):
        """Test that the usage message is shown without arguments."""
        returncode, output = run_cli(main)
        assert returncode == 0
        assert 'Usage: vm-image-sync' in output

    def test_invalid_image_type(self):
        """Test that an invalid image type is reported without side effects."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            returncode, output = run_cli(main, '--host=localhost', '--source=%s' % root, '--target=%s' % root, 'docker')
            assert returncode == 1
            assert os.listdir(root) == []

    def test_argument_validation(self):
        """Test argument validation."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            common = ['--host=localhost', '--source=%s' % root]
            # Unknown options are usage errors.
            returncode, output = run_cli(main, '--unknown-option', 'kvm')
            assert returncode == 1
            # Invalid protocols are usage errors.
            returncode, output = run_cli(main, '--protocol=ftp', '--target=%s' % root, *(common + ['kvm']))
            assert returncode == 1
            # Invalid snapshot counts are usage errors.
            returncode, output = run_cli(main, '--keep=0', '--target=%s' % root, *(common + ['kvm']))
            assert returncode == 1
            # A missing destination directory is an error.
            missing = os.path.join(root, 'does-not-exist')
            returncode, output = run_cli(main, '--target=%s' % missing, *(common + ['kvm']))
            assert returncode == 1
            assert not os.path.exists(missing)
            assert os.listdir(root) == []

    def test_build_not_found(self):
        """Test that a run fails when no build directory matches."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            source, destination = create_local_setup(root)
            returncode, output = run_cli(
                main, '--host=localhost', '--source=%s' % source,
                '--target=%s' % destination, '--build=9.9', 'kvm',
            )
            assert returncode == 1
            snapshots = [e for e in os.listdir(destination) if not e.startswith('.')]
            assert sorted(snapshots) == sorted(['old-%i' % i for i in range(1, 10)])

    def test_incremental_download(self):
        """Test a complete run that uses rsync, promotes the image and rotates old snapshots."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            source, destination = create_local_setup(root)
            staging = os.path.join(destination, STAGING_DIRECTORY_NAME, 'KVM')
            os.makedirs(staging)
            for filename in 'install.sh', 'disk.qcow2':
                with open(os.path.join(staging, filename), 'w') as handle:
                    handle.write('%s contents\n' % filename)
            with MockedProgram('rsync'):
                returncode, output = run_cli(
                    main, '--host=localhost', '--source=%s' % source,
                    '--target=%s' % destination, '--fork=1.0', 'kvm',
                )
            assert returncode == 0
            snapshot = os.path.join(destination, '1.0-298', 'KVM')
            assert os.path.isfile(os.path.join(snapshot, 'disk.qcow2'))
            assert get_mode(os.path.join(snapshot, 'install.sh')) & 0o770 == 0o770
            # The three oldest snapshots were removed to keep seven.
            expected = set(['1.0-298', STAGING_DIRECTORY_NAME] + ['old-%i' % i for i in range(4, 10)])
            assert set(e for e in os.listdir(destination) if not e.endswith('.lock')) == expected

    def test_first_download(self):
        """Test a first download from a remote server using lftp."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            destination = os.path.join(root, 'images')
            os.mkdir(destination)
            lftp_input = os.path.join(root, 'lftp-input.txt')
            script = '\n'.join([
                'cat >> %s' % lftp_input,
                'cat << EOF',
                SAMPLE_LISTING.strip(),
                'EOF',
            ])
            with MockedProgram('lftp', script=script):
                returncode, output = run_cli(
                    main, '--host=builds.example.com', '--user=alice',
                    '--source=/ifs/projects/images', '--fork=1.0',
                    '--target=%s' % destination, '--build=297', 'vmware',
                    input='secret\n',
                )
            assert returncode == 0
            with open(lftp_input) as handle:
                lftp_commands = handle.read()
            assert 'open -u "alice,secret" ftp://builds.example.com' in lftp_commands
            assert '"/ifs/projects/images/1.0/"' in lftp_commands
            assert 'cls -1 -q --classify --date' in lftp_commands
            assert 'mirror --use-pget-n=5 "/ifs/projects/images/1.0/1.0-297/OVA"' in lftp_commands
            assert os.path.isdir(os.path.join(destination, STAGING_DIRECTORY_NAME, 'OVA'))
            assert os.path.isdir(os.path.join(destination, '1.0-297', 'OVA'))

    def test_transfer_failure(self):
        """Test that the exit code of a failed transfer is forwarded and nothing is promoted or rotated."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            source, destination = create_local_setup(root)
            os.makedirs(os.path.join(destination, STAGING_DIRECTORY_NAME, 'KVM'))
            with MockedProgram('rsync', returncode=23):
                returncode, output = run_cli(
                    main, '--host=localhost', '--source=%s' % source,
                    '--target=%s' % destination, '--fork=1.0', 'kvm',
                )
            assert returncode == 23
            assert not os.path.exists(os.path.join(destination, '1.0-298'))
            assert all(os.path.isdir(os.path.join(destination, 'old-%i' % i)) for i in range(1, 10))

    def test_dry_run(self):
        """Make sure a dry run doesn't download, promote or remove anything."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            source, destination = create_local_setup(root)
            os.makedirs(os.path.join(destination, STAGING_DIRECTORY_NAME, 'KVM'))
            before = set(os.listdir(destination))
            returncode, output = run_cli(
                main, '--dry-run', '--host=localhost', '--source=%s' % source,
                '--target=%s' % destination, '--fork=1.0', '--keep=2', 'kvm',
            )
            assert returncode == 0
            assert set(os.listdir(destination)) == before

    def test_removal_failure(self):
        """Make sure failing to remove an old snapshot isn't fatal."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            source, destination = create_local_setup(root)
            config = SyncConfig(image_type='kvm', host='localhost', source_directory=source,
                                destination_directory=destination, max_snapshots=7)
            with CustomSearchPath() as directory:
                # Both the unprivileged and the privileged removal fail.
                for program in 'rm', 'sudo':
                    create_program(directory, program, 'exit 1')
                failures = ImageSync(config).rotate_snapshots()
            assert [s.name for s in failures] == ['old-1', 'old-2']
            assert all(os.path.isdir(os.path.join(destination, 'old-%i' % i)) for i in range(1, 10))

    def test_removal_retry(self):
        """Make sure a failed removal is retried with superuser privileges."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            source, destination = create_local_setup(root)
            markers = os.path.join(root, 'markers')
            os.mkdir(markers)
            config = SyncConfig(image_type='kvm', host='localhost', source_directory=source,
                                destination_directory=destination, max_snapshots=7)
            with CustomSearchPath() as directory:
                # The first attempt to remove a directory fails, the second succeeds.
                create_program(directory, 'rm', '\n'.join([
                    'for last; do :; done',
                    'marker="%s/$(basename "$last")"' % markers,
                    'if [ -e "$marker" ]; then exec /bin/rm "$@"; fi',
                    'touch "$marker"',
                    'exit 1',
                ]))
                # Run the command without switching users.
                create_program(directory, 'sudo', '\n'.join([
                    'while [ "${1#-}" != "$1" ]; do shift; done',
                    'exec "$@"',
                ]))
                failures = ImageSync(config).rotate_snapshots()
            assert failures == []
            assert sorted(os.listdir(markers)) == ['old-1', 'old-2']
            assert not os.path.exists(os.path.join(destination, 'old-1'))
            assert not os.path.exists(os.path.join(destination, 'old-2'))
            assert all(os.path.isdir(os.path.join(destination, 'old-%i' % i)) for i in range(3, 10))

    def test_missing_source_directory(self):
        """Make sure a missing source directory is reported without a traceback."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            source, destination = create_local_setup(root)
            returncode, output = run_cli(
                main, '--host=localhost', '--source=%s' % source,
                '--target=%s' % destination, '--fork=2.0', 'kvm',
            )
            assert returncode == 1
            assert 'Traceback' not in output
            assert not os.path.exists(os.path.join(destination, STAGING_DIRECTORY_NAME))


    def test_rotate_snapshots(self):
        """Test that rotate_snapshots() removes the oldest snapshots."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            source, destination = create_local_setup(root)
            config = SyncConfig(image_type='kvm', host='localhost', source_directory=source,
                                destination_directory=destination, max_snapshots=4)
            assert ImageSync(config).rotate_snapshots() == []
            assert sorted(os.listdir(destination)) == ['old-6', 'old-7', 'old-8', 'old-9']

    def test_lock_contention(self):
        """Make sure two runs can't use the same destination directory at the same time."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            source, destination = create_local_setup(root)
            config = SyncConfig(image_type='kvm', host='localhost', source_directory=source,
                                destination_directory=destination, build_fork='1.0')
            program = ImageSync(config)
            with exclusive_lock(program.lock_file):
                self.assertRaises(LockContention, program.run)
            assert not os.path.exists(os.path.join(destination, '1.0-298'))

    def test_locate_build(self):
        """Test locating the most recent build in a local source directory."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            source, destination = create_local_setup(root)
            config = SyncConfig(image_type='kvm', host='localhost', source_directory=source,
                                destination_directory=destination, build_fork='1.0')
            assert ImageSync(config).locate_build().name == '1.0-298'
            config = SyncConfig(image_type='kvm', host='localhost', source_directory=source,
                                destination_directory=destination, build_fork='1.0',
                                build_pattern='297')
            assert ImageSync(config).locate_build().name == '1.0-297'
            config = SyncConfig(image_type='kvm', host='localhost', source_directory=source,
                                destination_directory=destination, build_fork='2.0')
            self.assertRaises(BuildNotFound, ImageSync(config).locate_build)
            config = SyncConfig(image_type='kvm', host='localhost', source_directory=source,
                                destination_directory=destination, build_fork='1.0',
                                build_pattern='1.1')
            self.assertRaises(BuildNotFound, ImageSync(config).locate_build)

    def test_select_protocol(self):
        """Test automatic selection of the transfer protocol."""
        with TemporaryDirectory(prefix='vm-image-sync-', suffix='-test-suite') as root:
            config = SyncConfig(image_type='kvm', host='localhost', source_directory=root,
                                destination_directory=root)
            assert ImageSync(config).select_protocol() == 'lftp'
            os.mkdir(os.path.join(root, STAGING_DIRECTORY_NAME))
            assert ImageSync(config).select_protocol() == 'rsync'
            config = SyncConfig(image_type='kvm', host='localhost', source_directory=root,
                                destination_directory=root, protocol='lftp')
            assert ImageSync(config).select_protocol() == 'lftp'


def create_local_setup(root):
    """
    Create a local source directory and a destination directory with old snapshots.

    :param root: The pathname of a temporary directory (a string).
    :returns: A tuple with the pathnames of the source and destination directories.

    The source directory contains the builds 1.0-297 and 1.0-298 (the most
    recent) of fork 1.0, the destination directory contains nine snapshots
    named old-1 to old-9 (from oldest to newest).
    """
    now = time.time()
    source = os.path.join(root, 'source')
    destination = os.path.join(root, 'destination')
    for build, age in (('1.0-297', 2), ('1.0-298', 1)):
        directory = os.path.join(source, '1.0', build)
        os.makedirs(os.path.join(directory, 'KVM'))
        touch(os.path.join(directory, 'KVM', 'disk.qcow2'))
        set_age(directory, now, days=age)
    for number in range(1, 10):
        pathname = os.path.join(destination, 'old-%i' % number)
        os.makedirs(pathname)
        set_age(pathname, now, days=20 - number)
    return source, destination


def create_program(directory, name, script):
    """Create an executable shell script in a directory."""
    pathname = os.path.join(directory, name)
    with open(pathname, 'w') as handle:
        handle.write('#!/bin/sh\n%s\n' % script)
    os.chmod(pathname, 0o755)


def set_age(pathname, now, days):
    """Set the modification time of a pathname to a number of days ago."""
    timestamp = now - days * 86400
    os.utime(pathname, (timestamp, timestamp))


def get_mode(pathname):
    """Get the permission bits of a pathname."""
    return stat.S_IMODE(os.stat(pathname).st_mode)


def describe_tree(directory):
    """Get the names, contents, permissions and modification times in a directory tree."""
    state = {}
    for root, dirs, files in os.walk(directory):
        for name in dirs + files:
            pathname = os.path.join(root, name)
            contents = None
            if os.path.isfile(pathname):
                with open(pathname) as handle:
                    contents = handle.read()
            state[os.path.relpath(pathname, directory)] = (contents, get_mode(pathname), os.path.getmtime(pathname))
    return state
