import json
from pathlib import Path

import pytest

import setup_reality
from setup_reality import (
    BBR_MODULES_FILE,
    SYSCTL_FILE_PATH,
    BinaryInstallError,
    DependencyInstallError,
    PrivilegeError,
    apply_network_tuning,
    check_privileges,
    detect_host_resources,
    detect_os,
    get_sysctl_conf,
    install_dependencies,
    install_xray,
    main,
)

from conftest import PRIVATE_KEY, PUBLIC_KEY, UBUNTU_OS_RELEASE

ROCKY_OS_RELEASE = 'NAME="Rocky Linux"\nVERSION_ID="9.3"\nID="rocky"\nPRETTY_NAME="Rocky Linux 9.3 (Blue Onyx)"\n'
CENTOS7_OS_RELEASE = 'NAME="CentOS Linux"\nVERSION_ID="7"\nID="centos"\nPRETTY_NAME="CentOS Linux 7 (Core)"\n'


def test_root_passes_privilege_check(host):
    host.respond('id -u', '0\n')
    check_privileges(host)


def test_non_root_fails_privilege_check(host):
    host.respond('id -u', '1000\n')
    with pytest.raises(PrivilegeError, match='uid 1000'):
        check_privileges(host)


@pytest.mark.parametrize('os_release,os_type,pkg_manager', [
    (UBUNTU_OS_RELEASE, 'ubuntu', 'apt'),
    (ROCKY_OS_RELEASE, 'rocky', 'dnf'),
    (CENTOS7_OS_RELEASE, 'centos', 'yum'),
])
def test_detect_os(host, os_release, os_type, pkg_manager):
    host.respond('os-release', os_release)
    os_info = detect_os(host)
    assert (os_info['os_type'], os_info['pkg_manager']) == (os_type, pkg_manager)


def test_detect_os_falls_back_to_probing(host):
    host.respond('which dnf', '/usr/bin/dnf\n')
    assert detect_os(host)['pkg_manager'] == 'dnf'


def test_host_resources(host):
    host.respond('nproc', '4\n')
    host.respond('free -m', '3900\n')
    assert detect_host_resources(host) == setup_reality.TuningProfile(4, 3900, 2048)


def test_host_resources_unknown(host):
    assert detect_host_resources(host) == setup_reality.TuningProfile(1, 0, 1024)


def test_sysctl_conf_enables_bbr_and_fastopen():
    conf = get_sysctl_conf()
    assert 'net.core.default_qdisc = fq' in conf
    assert 'net.ipv4.tcp_congestion_control = bbr' in conf
    assert 'net.ipv4.tcp_fastopen = 3' in conf
    for line in conf.splitlines():
        assert line.startswith('#') or line.startswith('net.')


def test_network_tuning_writes_and_applies_drop_in(host):
    apply_network_tuning(host)
    sysctl_write = host.index_of(f'mv -f {SYSCTL_FILE_PATH}.tmp {SYSCTL_FILE_PATH}')
    assert 'tcp_congestion_control = bbr' in host.commands[sysctl_write]
    assert host.index_of(f'sysctl -p {SYSCTL_FILE_PATH}') > sysctl_write
    assert host.ran(BBR_MODULES_FILE)
    assert host.ran('modprobe tcp_bbr')


def test_rejected_sysctl_keys_only_warn(host, capsys):
    host.respond('sysctl -p', '', exit_code=255, stderr='sysctl: cannot stat /proc/sys/net/core/netdev_budget')
    apply_network_tuning(host)
    assert 'continuing' in capsys.readouterr().out


def test_dependencies_on_apt(host):
    install_dependencies(host, {'pkg_manager': 'apt'})
    assert host.index_of('apt-get update') < host.index_of('apt-get upgrade') < host.index_of('apt-get install')
    assert host.ran('apt-get install -y -qq curl wget unzip openssl socat ca-certificates')


def test_dependencies_skip_upgrade(host):
    install_dependencies(host, {'pkg_manager': 'dnf'}, upgrade=False)
    assert not host.ran('dnf upgrade')
    assert host.ran('dnf install -y curl')


def test_failed_package_step_raises(host):
    host.respond('apt-get update', '', exit_code=100)
    with pytest.raises(DependencyInstallError, match='update'):
        install_dependencies(host, {'pkg_manager': 'apt'})
    assert not host.ran('apt-get install')


def test_missing_diagnostic_packages_are_not_fatal(host):
    host.respond('htop', '', exit_code=1)
    install_dependencies(host, {'pkg_manager': 'yum'})


def test_unknown_package_manager_raises(host):
    with pytest.raises(DependencyInstallError):
        install_dependencies(host, {'pkg_manager': 'unknown'})


def test_xray_binary_missing_after_install(host):
    host.respond('test -x', 'BINARY_MISSING\n')
    with pytest.raises(BinaryInstallError):
        install_xray(host)
    assert host.ran('install-release.sh)" @ install')


def test_xray_installed(host):
    host.respond('test -x', 'BINARY_OK\n')
    host.respond('xray version', 'Xray 25.3.6 (Xray, Penetrates Everything.)\n')
    assert install_xray(host).startswith('Xray 25.3.6')


@pytest.fixture
def local_host(monkeypatch, healthy_host):
    monkeypatch.setattr(setup_reality, 'LocalSSHClient', lambda: healthy_host)
    return healthy_host


def test_full_local_run(local_host, capsys):
    assert main(['--local', '--yes', '--port', '8443', '--level', '2']) == 0

    commands = local_host.commands
    stages = ['id -u', 'sysctl -p', 'apt-get install', 'install-release.sh', 'x25519',
              '/usr/local/etc/xray/config.json.tmp', 'daemon-reload', 'systemctl restart xray', 'api.ipify.org']
    positions = [local_host.index_of(stage) for stage in stages]
    assert positions == sorted(positions)

    config_write = next(cmd for cmd in commands if 'config.json.tmp' in cmd)
    config_text = config_write.split('\n', 1)[1].rsplit('\n', 1)[0]
    config = json.loads(config_text)
    assert config['inbounds'][0]['port'] == 8443
    assert config['inbounds'][0]['streamSettings']['realitySettings']['privateKey'] == PRIVATE_KEY

    out = capsys.readouterr().out
    assert f'@203.0.113.7:8443?security=reality&sni=www.cloudflare.com&flow=xtls-rprx-vision&pbk={PUBLIC_KEY}' in out
    assert PRIVATE_KEY not in out
    assert local_host.closed


def test_skip_tuning(local_host):
    assert main(['--local', '--yes', '--skip-tuning', '--skip-upgrade']) == 0
    assert not local_host.ran('sysctl -p')
    assert not local_host.ran('apt-get upgrade')


def test_non_root_run_changes_nothing(local_host):
    local_host.respond('id -u', '1000\n')
    assert main(['--local', '--yes']) == 1
    assert local_host.commands == ['id -u']
    assert local_host.closed


def test_failed_service_start_exits_nonzero(local_host, capsys):
    local_host.respond('is-active', 'failed\n', exit_code=3)
    assert main(['--local', '--yes']) == 1
    assert 'Setup failed' in capsys.readouterr().out
    assert not local_host.ran('api.ipify.org')


def test_remote_connection_failure(monkeypatch):
    class RefusingClient:
        def set_missing_host_key_policy(self, policy):
            pass

        def connect(self, **kwargs):
            raise OSError('Connection refused')

        def close(self):
            pass

    monkeypatch.setattr(setup_reality.paramiko, 'SSHClient', RefusingClient)
    monkeypatch.setattr(setup_reality, 'is_local_ip', lambda ip: False)
    assert main(['--server', '203.0.113.7', '--password', 'pw', '--yes']) == 1


def test_connection_params_default_to_local():
    conn = setup_reality.collect_connection_params(setup_reality.parse_args(['--yes']))
    assert conn.local_mode
    assert conn.save_dir is None


def test_connection_params_for_remote_host(monkeypatch, tmp_path):
    monkeypatch.setattr(setup_reality, 'is_local_ip', lambda ip: False)
    args = setup_reality.parse_args(['--server', '2001:db8::7', '--ssh-port', '2222', '--user', 'admin',
                                     '--password', 'pw', '--yes'])
    conn = setup_reality.collect_connection_params(args)
    assert not conn.local_mode
    assert (conn.server_ip, conn.ssh_port, conn.username, conn.password) == ('2001:db8::7', 2222, 'admin', 'pw')
    assert conn.save_dir.name.startswith('xray-2001-db8--7-')
    assert conn.save_dir.parent == Path.cwd()


def test_loopback_server_installs_locally():
    conn = setup_reality.collect_connection_params(setup_reality.parse_args(['--server', '127.0.0.1', '--yes']))
    assert conn.local_mode
