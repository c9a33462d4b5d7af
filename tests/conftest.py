import pytest

import setup_reality
from setup_reality import _LocalStderr, _LocalStdout

PRIVATE_KEY = 'sN5sKHZ7gY0mJhH2dQxX6bJ9yQ0p8GcVw3aVfE2cT0o'
PUBLIC_KEY = 'Zx8Ew0pQ6sU0lB7uL3iYtR5nG2hW9mJcVaD4fW1oXyE'

OLD_X25519_OUTPUT = f"Private key: {PRIVATE_KEY}\nPublic key: {PUBLIC_KEY}\n"

UBUNTU_OS_RELEASE = '''PRETTY_NAME="Ubuntu 22.04.4 LTS"
NAME="Ubuntu"
VERSION_ID="22.04"
ID=ubuntu
ID_LIKE=debian
'''


class FakeHost:
    """Stands in for an SSH client: records commands, replays scripted output.

    Responses are matched by substring; the most recently added match wins,
    so tests can override the defaults of a fixture.
    """

    def __init__(self):
        self.commands = []
        self._responses = []
        self.closed = False

    def respond(self, substring, stdout='', exit_code=0, stderr=''):
        self._responses.append((substring, stdout, exit_code, stderr))
        return self

    def exec_command(self, cmd, get_pty=False):
        self.commands.append(cmd)
        for substring, stdout, exit_code, stderr in reversed(self._responses):
            if substring in cmd:
                return None, _LocalStdout(stdout, exit_code), _LocalStderr(stderr)
        return None, _LocalStdout('', 0), _LocalStderr('')

    def close(self):
        self.closed = True

    def ran(self, substring):
        return any(substring in cmd for cmd in self.commands)

    def index_of(self, substring):
        for i, cmd in enumerate(self.commands):
            if substring in cmd:
                return i
        raise AssertionError(f"no command containing {substring!r}")


@pytest.fixture(autouse=True)
def english_and_no_sleep(monkeypatch):
    monkeypatch.setattr(setup_reality, 'LANG', 'en')
    monkeypatch.setattr(setup_reality.time, 'sleep', lambda seconds: None)


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def healthy_host(host):
    """A root Ubuntu host on which every step succeeds."""
    host.respond('id -u', '0\n')
    host.respond('os-release', UBUNTU_OS_RELEASE)
    host.respond('nproc', '2\n')
    host.respond('free -m', '3900\n')
    host.respond('test -x', 'BINARY_OK\n')
    host.respond('x25519', OLD_X25519_OUTPUT)
    host.respond('test -f', 'FILE_OK\n')
    host.respond('is-active', 'active\n')
    host.respond('api.ipify.org', '203.0.113.7\n')
    host.respond('tcp_congestion_control', 'bbr\n')
    return host


@pytest.fixture
def key_pair():
    return setup_reality.KeyPair(private_key=PRIVATE_KEY, public_key=PUBLIC_KEY)


@pytest.fixture
def make_profile(key_pair):
    def _make(level=1, **overrides):
        tuning = setup_reality.TuningProfile(cpu_cores=2, total_ram_mb=2048, buffer_size_kb=2048)
        values = dict(
            client_id='5783a3e7-e373-51cd-8642-c83782b807c5',
            listen_port=443,
            sni_domain='www.cloudflare.com',
            optimization_level=level,
            short_ids=('0123456789abcdef', '89abcdef', ''),
            policy=setup_reality.build_policy(level, tuning),
            key_pair=key_pair,
            label=f'Xray_Reality_{level}',
        )
        values.update(overrides)
        return setup_reality.ProxyProfile(**values)
    return _make
