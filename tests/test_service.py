import pytest

from setup_reality import (
    SERVICE_FILE_PATH,
    ServiceStartError,
    get_systemd_unit,
    install_xray_service,
    open_firewall_port,
    start_xray_service,
)


def test_unit_restarts_and_raises_limits():
    unit = get_systemd_unit()
    assert 'ExecStart=/usr/local/bin/xray run -config /usr/local/etc/xray/config.json' in unit
    assert 'After=network.target nss-lookup.target' in unit
    assert 'Restart=on-failure' in unit
    assert 'RestartSec=2' in unit
    assert 'RestartPreventExitStatus=23' in unit
    assert 'LimitNOFILE=1000000' in unit
    assert 'LimitNPROC=10000' in unit
    assert 'WantedBy=multi-user.target' in unit


def test_unit_runs_unprivileged_with_bind_capability():
    unit = get_systemd_unit()
    assert 'User=nobody' in unit
    assert 'AmbientCapabilities=CAP_NET_ADMIN CAP_NET_BIND_SERVICE' in unit
    assert 'NoNewPrivileges=true' in unit


def test_unit_as_root_has_no_capability_lines():
    unit = get_systemd_unit(user='root')
    assert 'User=root' in unit
    assert 'Capabilit' not in unit


def test_priority_boost_is_optional():
    assert 'Nice=-10' in get_systemd_unit()
    assert 'IOSchedulingClass=realtime' in get_systemd_unit()
    unit = get_systemd_unit(priority_boost=False)
    assert 'Nice' not in unit
    assert 'CPUScheduling' not in unit


def test_install_service_writes_unit_and_reloads(host):
    install_xray_service(host, user='xray-svc', priority_boost=False)
    assert f'mv -f {SERVICE_FILE_PATH}.tmp {SERVICE_FILE_PATH}' in host.commands[0]
    assert 'User=xray-svc' in host.commands[0]
    assert host.commands[1] == 'systemctl daemon-reload'


def test_active_service_is_success(host):
    host.respond('is-active', 'active\n')
    start_xray_service(host)
    assert host.index_of('systemctl enable xray') < host.index_of('systemctl restart xray')
    assert not host.ran('journalctl')


def test_inactive_service_raises_with_journal(host, capsys):
    host.respond('is-active', 'activating\n', exit_code=3)
    host.respond('journalctl', 'xray[811]: Failed to start: bind: address already in use\n')

    with pytest.raises(ServiceStartError) as excinfo:
        start_xray_service(host)

    assert 'address already in use' in excinfo.value.journal
    assert host.ran('journalctl -u xray --no-pager -n 20')
    assert 'address already in use' in capsys.readouterr().out


def test_firewall_prefers_ufw(host):
    host.respond('command -v ufw', 'FOUND\n')
    open_firewall_port(host, 443)
    assert host.ran('ufw allow 443/tcp')
    assert not host.ran('firewall-cmd --permanent')


def test_firewall_falls_back_to_firewalld(host):
    host.respond('command -v ufw', 'MISSING\n')
    host.respond('command -v firewall-cmd', 'FOUND\n')
    open_firewall_port(host, 8443)
    assert host.ran('firewall-cmd --permanent --add-port=8443/tcp')
    assert host.ran('firewall-cmd --reload')


def test_no_firewall_tool_only_warns(host, capsys):
    open_firewall_port(host, 443)
    assert '443/tcp manually' in capsys.readouterr().out
