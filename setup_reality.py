# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "paramiko>=3.4.0",
# ]
# ///
"""
Xray VLESS + Reality Server Setup

One-command Xray-core VLESS+Reality server deployment, tuned for low latency.

Features:
    • Xray-core installed from the upstream release script
    • X25519 Reality keypair generated by the xray binary itself
    • Three optimization levels (vision flow or plain TCP)
    • Kernel network tuning (BBR, socket buffers, TCP fast open)
    • Hardened systemd unit with raised limits and scheduling priority
    • Prints and saves a vless:// share link for client import

Usage:
    uv run setup_reality.py [OPTIONS]

Options:
    --server IP   Install on a remote VPS over SSH (default: this machine)
    --yes         Take defaults for everything not given on the command line
    --debug       Xray log level 'debug' instead of 'warning'

Examples:
    sudo uv run setup_reality.py
    uv run setup_reality.py --server 203.0.113.7 --sni www.microsoft.com --level 2
"""

import sys

# Check for required dependency
try:
    import paramiko
except ImportError:
    print("Error: 'paramiko' module is required but not installed.")
    print("Run this script with: uv run setup_reality.py")
    print("  (uv automatically installs dependencies from inline metadata)")
    print("Or install manually: pip install paramiko")
    sys.exit(1)

import argparse
import getpass
import ipaddress
import json
import os
import platform
import re
import secrets
import shlex
import socket
import subprocess
import time
import urllib.parse
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path


# ---------------------------------------------------------------------------
# Console formatting helpers – clear, coloured output for steps / warnings
# ---------------------------------------------------------------------------
def _supports_color() -> bool:
    """Check whether the terminal likely supports ANSI colour codes."""
    if os.environ.get('NO_COLOR'):
        return False
    if os.environ.get('FORCE_COLOR'):
        return True
    if platform.system() == 'Windows':
        return os.environ.get('WT_SESSION') is not None or os.environ.get('TERM_PROGRAM') == 'vscode'
    return hasattr(sys.stdout, 'isatty') and sys.stdout.isatty()


_COLOR = _supports_color()


def _fmt(code: str, text: str) -> str:
    return f'\033[{code}m{text}\033[0m' if _COLOR else text


def fmt_step(text: str) -> str:
    """Bold cyan for step headers."""
    return _fmt('1;36', text)


def fmt_ok(text: str) -> str:
    """Green for success messages."""
    return _fmt('32', text)


def fmt_warn(text: str) -> str:
    """Yellow for warnings."""
    return _fmt('33', text)


def fmt_err(text: str) -> str:
    """Red for errors."""
    return _fmt('1;31', text)


def fmt_info(text: str) -> str:
    """Dim/grey for informational notes."""
    return _fmt('2', text)


def fmt_banner(text: str) -> str:
    """Bold white for banners."""
    return _fmt('1;37', text)


def print_step(text: str) -> None:
    print(fmt_step(text))


def print_ok(text: str) -> None:
    print(fmt_ok(text))


def print_warn(text: str) -> None:
    print(fmt_warn(text))


def print_err(text: str) -> None:
    print(fmt_err(text))


# ---------------------------------------------------------------------------
# Constants – paths, timeouts and defaults in one place for easy tuning
# ---------------------------------------------------------------------------
XRAY_BINARY_PATH: str = '/usr/local/bin/xray'
XRAY_CONFIG_DIR: str = '/usr/local/etc/xray'
XRAY_CONFIG_FILE: str = f'{XRAY_CONFIG_DIR}/config.json'
XRAY_SERVICE_NAME: str = 'xray'
SERVICE_FILE_PATH: str = f'/etc/systemd/system/{XRAY_SERVICE_NAME}.service'
SYSCTL_FILE_PATH: str = '/etc/sysctl.d/99-xray-network.conf'
BBR_MODULES_FILE: str = '/etc/modules-load.d/xray-bbr.conf'
INFO_FILE_PATH: str = '/root/xray_reality_info.txt'
XRAY_INSTALL_SCRIPT_URL: str = 'https://github.com/XTLS/Xray-install/raw/main/install-release.sh'

DEFAULT_PORT: int = 443
DEFAULT_SNI: str = 'www.cloudflare.com'
DEFAULT_LEVEL: int = 1
DEFAULT_SHORT_ID_COUNT: int = 3
DEFAULT_SERVICE_USER: str = 'nobody'
VISION_FLOW: str = 'xtls-rprx-vision'
SHORT_ID_LENGTHS: tuple[int, ...] = (16, 8, 0)
API_PORT: int = 10085

SERVICE_START_WAIT: int = 3
JOURNAL_TAIL_LINES: int = 20
SSH_CONNECT_TIMEOUT: int = 30
IP_LOOKUP_TIMEOUT: int = 10
PUBLIC_IP_PROVIDERS: tuple[str, ...] = (
    'https://api.ipify.org',
    'https://ipinfo.io/ip',
)
PUBLIC_IP_PLACEHOLDER: str = 'YOUR_SERVER_IP'

RECOMMENDED_SNI_DOMAINS: tuple[tuple[str, str], ...] = (
    ('www.cloudflare.com', 'Global CDN, usually fastest'),
    ('www.microsoft.com', 'Azure backbone'),
    ('www.apple.com', 'Akamai CDN'),
    ('www.nvidia.com', 'Gaming focused'),
    ('store.steampowered.com', 'Gaming platform'),
)

REQUIRED_PACKAGES: tuple[str, ...] = ('curl', 'wget', 'unzip', 'openssl', 'socat', 'ca-certificates')
DIAGNOSTIC_PACKAGES: tuple[str, ...] = ('htop', 'iftop', 'iperf3', 'net-tools')

# Package manager command templates, keyed by detected manager
PKG_COMMANDS: dict[str, dict[str, str]] = {
    'apt': {
        'update': 'DEBIAN_FRONTEND=noninteractive apt-get update -qq',
        'upgrade': 'DEBIAN_FRONTEND=noninteractive apt-get upgrade -y -qq '
                   '-o Dpkg::Options::="--force-confdef" -o Dpkg::Options::="--force-confold"',
        'install': 'DEBIAN_FRONTEND=noninteractive apt-get install -y -qq {packages}',
    },
    'dnf': {
        'update': 'dnf makecache -y',
        'upgrade': 'dnf upgrade -y',
        'install': 'dnf install -y {packages}',
    },
    'yum': {
        'update': 'yum makecache -y',
        'upgrade': 'yum update -y',
        'install': 'yum install -y {packages}',
    },
}

LANG = 'en'

# Language strings
MESSAGES = {
    'en': {
        'select_language': 'Language / 语言 [en/zh] (default: en): ',
        'title': 'Xray VLESS + Reality Setup',
        'enter_server_ip': 'Server IP (Enter for this machine): ',
        'error_invalid_ip': "'{}' is not a valid IPv4 or IPv6 address.",
        'enter_ssh_port': 'SSH port [22]: ',
        'enter_username': 'SSH user [root]: ',
        'enter_password': 'SSH password: ',
        'enter_privkey_passphrase': 'Private key passphrase (Enter to skip): ',
        'error_password_required': 'Password is required.',
        'local_ip_detected': '{} is an address of this machine, installing locally.',
        'local_mode': '[LOCAL MODE] Installing on this machine',
        'connecting': '[CONNECTING] {}:{}',
        'connected': 'Connected!',
        'failed_connect': 'Connection failed: {}',
        'host_closed': 'Connection closed.',
        'step1_preflight': '[1/9] Checking privileges and host resources...',
        'step2_params': '[2/9] Proxy parameters',
        'step3_tuning': '[3/9] Applying network optimizations...',
        'step4_packages': '[4/9] Installing packages...',
        'step5_xray': '[5/9] Installing Xray-core...',
        'step6_keys': '[6/9] Generating Reality key pair...',
        'step7_config': '[7/9] Writing Xray configuration...',
        'step8_service': '[8/9] Installing and starting xray service...',
        'step9_report': '[9/9] Collecting connection details...',
        'skip_tuning': '  Skipping network optimizations (--skip-tuning)',
        'detected_os': '  Detected: {} ({})',
        'host_resources': '  CPU cores: {}, RAM: {} MB, buffer size: {} KB',
        'not_root': 'This setup must run as root (uid 0), got uid {}. Use sudo or log in as root.',
        'unsupported_pkg_manager': "Unsupported package manager '{}' (need apt, dnf or yum).",
        'pkg_step_failed': "Package manager step '{}' failed with exit code {}.",
        'xray_install_failed': 'Xray installation failed: {} not found after install.',
        'xray_installed': '  ✓ Xray-core installed: {}',
        'keygen_exec_failed': "'{} x25519' exited with code {}.",
        'keygen_parse_failed': 'Could not find a private/public key pair in the x25519 output.',
        'keys_generated': '  ✓ Reality key pair generated',
        'config_write_failed': 'Config file {} could not be written.',
        'config_written': '  ✓ Configuration written to {}',
        'service_written': '  ✓ Service unit written to {}',
        'service_started': '  ✓ xray service is active',
        'service_failed': 'xray service is not active after {}s (state: {}).',
        'service_logs': '  Last journal lines for xray:',
        'tuning_applied': '  ✓ Network optimizations applied',
        'sysctl_warn': '  [WARN] Some kernel parameters were rejected; continuing.',
        'firewall_ufw': '  ✓ ufw: allowed {}/tcp',
        'firewall_firewalld': '  ✓ firewalld: allowed {}/tcp',
        'firewall_none': '  [WARN] No ufw or firewalld found. Open port {}/tcp manually.',
        'enter_uuid': 'Client UUID (Enter to generate): ',
        'generated_uuid': '  Generated UUID: {}',
        'enter_port': 'Listening port [443]: ',
        'recommended_ports': '  Recommended ports: 443 (most stable), 80, 8080, 2053, 2083, 2087, 2096',
        'recommended_sni': '  Recommended low-latency SNI domains:',
        'enter_sni': 'SNI domain, list number or Enter for {}: ',
        'selected_sni': '  Selected SNI: {}',
        'optimization_levels': '  Optimization levels:',
        'enter_level': 'Optimization level 1-3 [1]: ',
        'error_invalid_port': "Invalid port '{}' (must be 1-65535).",
        'error_invalid_level': "Invalid optimization level '{}' (must be 1, 2 or 3).",
        'ip_lookup_failed': '  [WARN] Public IP lookup failed, using {}',
        'congestion_control': '  TCP congestion control: {}',
        'setup_complete': 'XRAY REALITY SETUP COMPLETE',
        'share_link': 'Share link (import into your client):',
        'info_saved_host': 'Connection info saved on server: {}',
        'info_saved_local': 'Connection info saved locally: {}',
        'info_save_local_failed': '[WARN] Could not save connection info locally: {}',
        'setup_failed': 'Setup failed: {}',
    },
    'zh': {
        'select_language': 'Select language / 选择语言 [en/zh] (默认: en): ',
        'title': 'Xray VLESS + Reality 安装脚本',
        'enter_server_ip': '请输入服务器 IP（回车表示本机）: ',
        'error_invalid_ip': "错误: '{}' 不是有效的 IPv4 或 IPv6 地址",
        'enter_ssh_port': '请输入 SSH 端口 [22]: ',
        'enter_username': '请输入 SSH 用户名 [root]: ',
        'enter_password': '请输入 SSH 密码: ',
        'enter_privkey_passphrase': '私钥密码（回车跳过）: ',
        'error_password_required': '错误: 密码是必填项',
        'local_ip_detected': '{} 是本机地址，将在本机安装。',
        'local_mode': '[本地模式] 在本机安装',
        'connecting': '[正在连接] {}:{}',
        'connected': '连接成功！',
        'failed_connect': '连接失败: {}',
        'host_closed': '连接已关闭。',
        'step1_preflight': '[1/9] 检查权限与主机资源...',
        'step2_params': '[2/9] 代理参数',
        'step3_tuning': '[3/9] 应用网络优化...',
        'step4_packages': '[4/9] 安装软件包...',
        'step5_xray': '[5/9] 安装 Xray-core...',
        'step6_keys': '[6/9] 生成 Reality 密钥对...',
        'step7_config': '[7/9] 写入 Xray 配置...',
        'step8_service': '[8/9] 安装并启动 xray 服务...',
        'step9_report': '[9/9] 收集连接信息...',
        'skip_tuning': '  跳过网络优化 (--skip-tuning)',
        'detected_os': '  检测到: {} ({})',
        'host_resources': '  CPU 核心: {}，内存: {} MB，缓冲区: {} KB',
        'not_root': '必须以 root (uid 0) 身份运行，当前 uid 为 {}。请使用 sudo 或 root 登录。',
        'unsupported_pkg_manager': "不支持的包管理器 '{}'（需要 apt、dnf 或 yum）",
        'pkg_step_failed': "包管理器步骤 '{}' 失败，退出码 {}",
        'xray_install_failed': 'Xray 安装失败: 安装后未找到 {}',
        'xray_installed': '  ✓ Xray-core 已安装: {}',
        'keygen_exec_failed': "'{} x25519' 退出码 {}",
        'keygen_parse_failed': '无法从 x25519 输出中解析出私钥/公钥',
        'keys_generated': '  ✓ Reality 密钥对已生成',
        'config_write_failed': '配置文件 {} 写入失败',
        'config_written': '  ✓ 配置已写入 {}',
        'service_written': '  ✓ 服务单元已写入 {}',
        'service_started': '  ✓ xray 服务运行中',
        'service_failed': '{} 秒后 xray 服务仍未运行（状态: {}）',
        'service_logs': '  xray 最近日志:',
        'tuning_applied': '  ✓ 网络优化已应用',
        'sysctl_warn': '  [警告] 部分内核参数未被接受，继续执行。',
        'firewall_ufw': '  ✓ ufw: 已放行 {}/tcp',
        'firewall_firewalld': '  ✓ firewalld: 已放行 {}/tcp',
        'firewall_none': '  [警告] 未找到 ufw 或 firewalld，请手动放行 {}/tcp',
        'enter_uuid': '客户端 UUID（回车自动生成）: ',
        'generated_uuid': '  已生成 UUID: {}',
        'enter_port': '监听端口 [443]: ',
        'recommended_ports': '  推荐端口: 443（最稳定）、80、8080、2053、2083、2087、2096',
        'recommended_sni': '  推荐的低延迟 SNI 域名:',
        'enter_sni': 'SNI 域名、列表序号，或回车使用 {}: ',
        'selected_sni': '  已选择 SNI: {}',
        'optimization_levels': '  优化等级:',
        'enter_level': '优化等级 1-3 [1]: ',
        'error_invalid_port': "错误: 无效端口 '{}'（必须在 1-65535 之间）",
        'error_invalid_level': "错误: 无效优化等级 '{}'（必须为 1、2 或 3）",
        'ip_lookup_failed': '  [警告] 获取公网 IP 失败，使用 {}',
        'congestion_control': '  TCP 拥塞控制: {}',
        'setup_complete': 'XRAY REALITY 安装完成',
        'share_link': '分享链接（导入客户端）:',
        'info_saved_host': '连接信息已保存在服务器: {}',
        'info_saved_local': '连接信息已保存到本地: {}',
        'info_save_local_failed': '[警告] 无法在本地保存连接信息: {}',
        'setup_failed': '安装失败: {}',
    },
}


def msg(key: str, *args) -> str:
    """Get localized message."""
    text = MESSAGES.get(LANG, MESSAGES['en']).get(key, key)
    if args:
        return text.format(*args)
    return text


# ---------------------------------------------------------------------------
# Errors – every fatal step raises one of these; main() turns them into exit 1
# ---------------------------------------------------------------------------
class SetupError(Exception):
    """Base class for fatal setup failures."""


class PrivilegeError(SetupError):
    pass


class HostConnectionError(SetupError):
    pass


class ParameterError(SetupError):
    pass


class DependencyInstallError(SetupError):
    pass


class BinaryInstallError(SetupError):
    pass


class KeyGenerationError(SetupError):
    pass


class ConfigWriteError(SetupError):
    pass


class ServiceStartError(SetupError):
    """The xray unit did not reach the 'active' state."""

    def __init__(self, message: str, journal: str = ''):
        super().__init__(message)
        self.journal = journal


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class OptimizationLevel:
    """Flow and policy timeouts selected by an optimization level."""
    name: str
    flow: str
    handshake: int
    conn_idle: int
    uplink_only: int
    downlink_only: int


OPTIMIZATION_LEVELS: dict[int, OptimizationLevel] = {
    1: OptimizationLevel('Ultra Low Latency', VISION_FLOW, handshake=2, conn_idle=120, uplink_only=0, downlink_only=0),
    2: OptimizationLevel('Balanced Performance', VISION_FLOW, handshake=4, conn_idle=300, uplink_only=2, downlink_only=5),
    3: OptimizationLevel('High Throughput', '', handshake=4, conn_idle=300, uplink_only=5, downlink_only=5),
}


@dataclass(frozen=True)
class TuningProfile:
    """Host resources and the buffer size derived from them."""
    cpu_cores: int = 1
    total_ram_mb: int = 0
    buffer_size_kb: int = 1024


@dataclass(frozen=True)
class PolicySettings:
    handshake: int
    conn_idle: int
    uplink_only: int
    downlink_only: int
    buffer_size_kb: int


@dataclass(frozen=True)
class KeyPair:
    private_key: str
    public_key: str


@dataclass(frozen=True)
class ProxyProfile:
    """Everything collected or generated for one installation run.

    Random fields (a generated client_id, short_ids) are created once by
    collect_params(); later stages only copy the profile to attach the
    key pair.
    """
    client_id: str
    listen_port: int
    sni_domain: str
    optimization_level: int
    short_ids: tuple[str, ...]
    policy: PolicySettings
    key_pair: KeyPair | None = None
    label: str = ''
    log_level: str = 'warning'
    enable_api: bool = False
    block_ads: bool = False

    @property
    def flow(self) -> str:
        return OPTIMIZATION_LEVELS[self.optimization_level].flow

    @property
    def primary_short_id(self) -> str:
        return self.short_ids[0]


@dataclass
class ConnectionParams:
    """How to reach the host being provisioned."""
    server_ip: str | None = None
    ssh_port: int = 22
    username: str = 'root'
    password: str | None = None
    use_key_auth: bool = False
    privkey_path: Path | None = None
    privkey_passphrase: str | None = None
    local_mode: bool = True
    save_dir: Path | None = None


# ---------------------------------------------------------------------------
# LocalSSHClient - runs commands on this machine behind the SSHClient interface
# ---------------------------------------------------------------------------
class _LocalChannel:
    """Mock channel for LocalSSHClient exec_command results."""
    def __init__(self, returncode: int):
        self.returncode = returncode

    def recv_exit_status(self) -> int:
        return self.returncode


class _LocalStdout:
    """Mock stdout for LocalSSHClient exec_command results."""
    def __init__(self, output: str, returncode: int):
        self._output = output
        self._lines = output.splitlines(keepends=True)
        self._index = 0
        self.channel = _LocalChannel(returncode)

    def read(self) -> bytes:
        return self._output.encode('utf-8')

    def readline(self) -> str:
        if self._index < len(self._lines):
            line = self._lines[self._index]
            self._index += 1
            return line
        return ''


class _LocalStderr:
    """Mock stderr for LocalSSHClient exec_command results."""
    def __init__(self, error: str):
        self._error = error

    def read(self) -> bytes:
        return self._error.encode('utf-8')


class LocalSSHClient:
    """Client that runs commands locally instead of over SSH.

    Mimics the part of the paramiko.SSHClient interface the setup uses, so
    every stage works the same against this machine or a remote VPS.
    """

    def close(self) -> None:
        pass

    def exec_command(self, cmd: str, get_pty: bool = False) -> tuple:
        """Execute command locally using subprocess.

        Returns:
            Tuple of (stdin, stdout, stderr) mimicking paramiko interface
        """
        try:
            result = subprocess.run(cmd, shell=True, capture_output=True, text=True)
        except OSError as e:
            return (None, _LocalStdout('', 1), _LocalStderr(str(e)))
        return (None, _LocalStdout(result.stdout, result.returncode), _LocalStderr(result.stderr))


def run_command_status(ssh: 'paramiko.SSHClient | LocalSSHClient', cmd: str, show_output: bool = False, quiet: bool = False) -> tuple[int, str]:
    """Execute a command on the target host and return its exit code and stdout.

    Args:
        ssh: Paramiko SSH client or LocalSSHClient for local mode
        cmd: Command to execute
        show_output: Whether to print command output line by line
        quiet: If True, suppress command echo (use for commands carrying secrets)
    """
    if not quiet:
        print(f"  > {cmd}")
    _, stdout, stderr = ssh.exec_command(cmd, get_pty=False)

    if show_output:
        output_lines = []
        while True:
            line = stdout.readline()
            if not line:
                break
            line_decoded = line if isinstance(line, str) else line.decode('utf-8', errors='ignore')
            output_lines.append(line_decoded)
            print(f"    {line_decoded.rstrip()}")
            sys.stdout.flush()
        output = ''.join(output_lines)
    else:
        output = stdout.read().decode('utf-8', errors='ignore')

    error = stderr.read().decode('utf-8', errors='ignore')
    exit_code = stdout.channel.recv_exit_status()
    if exit_code != 0 and error and not quiet:
        print_err(f"  [STDERR] {error.strip()}")
    return exit_code, output


def run_command(ssh: 'paramiko.SSHClient | LocalSSHClient', cmd: str, check_error: bool = True, show_output: bool = False, quiet: bool = False) -> str:
    """Execute a command on the target host, returning stdout.

    Non-zero exit codes only print a warning (when check_error is set);
    stages that must fail hard use run_command_status() instead.
    """
    exit_code, output = run_command_status(ssh, cmd, show_output=show_output, quiet=quiet)
    if check_error and exit_code != 0:
        print_warn(f"  [WARN] Command exited with code {exit_code}")
    return output


def write_remote_file(ssh: paramiko.SSHClient, path: str, content: str, mode: str = '644', quiet: bool = False) -> bool:
    """Write a file on the target host.

    Content goes to a temporary file beside the target first and is moved
    into place, so the target is either the old file or the complete new one.
    """
    directory = shlex.quote(os.path.dirname(path) or '/')
    tmp_path = shlex.quote(f"{path}.tmp")
    target = shlex.quote(path)
    marker = 'XRAYSETUPEOF'
    body = content.rstrip('\n')
    cmd = (f"mkdir -p {directory} && cat > {tmp_path} << '{marker}' && "
           f"chmod {mode} {tmp_path} && mv -f {tmp_path} {target}\n{body}\n{marker}")
    exit_code, _ = run_command_status(ssh, cmd, quiet=True)
    if not quiet:
        print(f"  > [{path} written, mode {mode}]")
    return exit_code == 0


def remote_file_exists(ssh: paramiko.SSHClient, path: str) -> bool:
    result = run_command(ssh, f"test -f {shlex.quote(path)} && echo 'FILE_OK' || echo 'FILE_MISSING'",
                         check_error=False, quiet=True)
    return 'FILE_OK' in result


def is_local_ip(ip: str) -> bool:
    """Check if the given IP is loopback or one of this machine's addresses."""
    if ip.lower() == 'localhost':
        return True
    try:
        if ipaddress.ip_address(ip).is_loopback:
            return True
    except ValueError:
        return False
    try:
        hostname = socket.gethostname()
        local_ips = {info[4][0] for info in socket.getaddrinfo(hostname, None)}
    except socket.gaierror:
        return False
    return ip in local_ips


def validate_ip_address(ip: str) -> bool:
    """Validate if the given string is a valid IPv4 or IPv6 address, or 'localhost'."""
    if ip.lower() == 'localhost':
        return True
    try:
        ipaddress.ip_address(ip)
        return True
    except ValueError:
        return False


def validate_port(port: int) -> bool:
    """Validate if the given port number is valid (1-65535)."""
    return 1 <= port <= 65535


def connect_host(conn: ConnectionParams):
    """Open the host handle: LocalSSHClient in local mode, paramiko otherwise."""
    if conn.local_mode:
        print_step(f"\n{msg('local_mode')}")
        return LocalSSHClient()

    print_step(f"\n{msg('connecting', conn.server_ip, conn.ssh_port)}")
    ssh = paramiko.SSHClient()
    ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    connect_kwargs = {
        'hostname': conn.server_ip,
        'port': conn.ssh_port,
        'username': conn.username,
        'timeout': SSH_CONNECT_TIMEOUT,
        'allow_agent': False,
        'look_for_keys': False,
    }
    if conn.use_key_auth:
        connect_kwargs['key_filename'] = str(conn.privkey_path)
        connect_kwargs['passphrase'] = conn.privkey_passphrase
    else:
        connect_kwargs['password'] = conn.password
    try:
        ssh.connect(**connect_kwargs)
    except (paramiko.SSHException, OSError) as e:
        ssh.close()
        raise HostConnectionError(msg('failed_connect', e)) from e
    print(f"{msg('connected')}\n")
    return ssh


# ---------------------------------------------------------------------------
# Preflight – privileges, OS and resource detection
# ---------------------------------------------------------------------------
def check_privileges(ssh: paramiko.SSHClient) -> None:
    """Raise PrivilegeError unless commands on the host run as root."""
    uid = run_command(ssh, "id -u", check_error=False).strip()
    if uid != '0':
        raise PrivilegeError(msg('not_root', uid or '?'))


def detect_os(ssh: paramiko.SSHClient) -> dict:
    """
    Detect the operating system and package manager on the host.

    Returns a dict with:
    - os_type: 'debian', 'ubuntu', 'centos', 'rhel', 'fedora', ..., 'unknown'
    - os_version: version string (e.g., '22.04', '12', '9')
    - os_name: full name (e.g., 'Ubuntu 22.04.3 LTS')
    - pkg_manager: 'apt', 'yum', 'dnf', 'unknown'
    """
    os_info = {
        'os_type': 'unknown',
        'os_version': '',
        'os_name': '',
        'pkg_manager': 'unknown',
    }

    os_release = run_command(ssh, "cat /etc/os-release 2>/dev/null || echo ''", check_error=False)
    for line in os_release.strip().split('\n'):
        if '=' in line:
            key, value = line.split('=', 1)
            value = value.strip('"\'')
            if key == 'ID':
                os_info['os_type'] = value.lower()
            elif key == 'VERSION_ID':
                os_info['os_version'] = value
            elif key == 'PRETTY_NAME':
                os_info['os_name'] = value

    if os_info['os_type'] in ['debian', 'ubuntu', 'linuxmint', 'pop']:
        os_info['pkg_manager'] = 'apt'
    elif os_info['os_type'] in ['centos', 'rhel', 'rocky', 'almalinux', 'oracle']:
        major = os_info['os_version'].split('.')[0]
        # CentOS 8+ and RHEL 8+ use dnf
        os_info['pkg_manager'] = 'dnf' if major.isdigit() and int(major) >= 8 else 'yum'
    elif os_info['os_type'] == 'fedora':
        os_info['pkg_manager'] = 'dnf'

    # Fallback: check for package managers directly
    if os_info['pkg_manager'] == 'unknown':
        for manager in ('apt', 'dnf', 'yum'):
            if manager in run_command(ssh, f"which {manager} 2>/dev/null || echo ''", check_error=False):
                os_info['pkg_manager'] = manager
                break

    return os_info


def buffer_size_for_ram(total_ram_mb: int) -> int:
    """Xray policy bufferSize (KB) for the given amount of RAM."""
    if total_ram_mb >= 4096:
        return 4096
    if total_ram_mb >= 2048:
        return 2048
    return 1024


def _parse_int(text: str, default: int) -> int:
    text = text.strip()
    return int(text) if text.isdigit() else default


def detect_host_resources(ssh: paramiko.SSHClient) -> TuningProfile:
    cpu_cores = _parse_int(run_command(ssh, "nproc 2>/dev/null", check_error=False), 1)
    total_ram_mb = _parse_int(
        run_command(ssh, "free -m 2>/dev/null | awk '/^Mem:/{print $2}'", check_error=False), 0)
    return TuningProfile(
        cpu_cores=cpu_cores,
        total_ram_mb=total_ram_mb,
        buffer_size_kb=buffer_size_for_ram(total_ram_mb),
    )


# ---------------------------------------------------------------------------
# System tuner – kernel network parameters
# ---------------------------------------------------------------------------
SYSCTL_SETTINGS: tuple[tuple[str, str], ...] = (
    ('net.core.rmem_max', '134217728'),
    ('net.core.wmem_max', '134217728'),
    ('net.core.rmem_default', '65536'),
    ('net.core.wmem_default', '65536'),
    ('net.core.netdev_max_backlog', '5000'),
    ('net.core.netdev_budget', '600'),
    ('net.core.default_qdisc', 'fq'),
    ('net.ipv4.tcp_rmem', '8192 87380 134217728'),
    ('net.ipv4.tcp_wmem', '8192 65536 134217728'),
    ('net.ipv4.tcp_congestion_control', 'bbr'),
    ('net.ipv4.tcp_fastopen', '3'),
    ('net.ipv4.tcp_mtu_probing', '1'),
    ('net.ipv4.tcp_timestamps', '1'),
    ('net.ipv4.tcp_sack', '1'),
    ('net.ipv4.tcp_window_scaling', '1'),
    ('net.ipv4.tcp_fin_timeout', '10'),
    ('net.ipv4.tcp_tw_reuse', '1'),
    ('net.ipv4.udp_rmem_min', '8192'),
    ('net.ipv4.udp_wmem_min', '8192'),
)


def get_sysctl_conf(settings: tuple[tuple[str, str], ...] = SYSCTL_SETTINGS) -> str:
    """Render the sysctl drop-in as a flat key = value list."""
    lines = ['# Low-latency network tuning for Xray', '# Generated by setup_reality.py']
    lines.extend(f"{key} = {value}" for key, value in settings)
    return '\n'.join(lines) + '\n'


def apply_network_tuning(ssh: paramiko.SSHClient) -> None:
    """Write and apply the sysctl drop-in and make sure BBR is loaded.

    Every command here is best effort: kernels without a parameter or the
    bbr module only produce warnings.
    """
    run_command(ssh, "lsmod | grep -q tcp_bbr || modprobe tcp_bbr 2>/dev/null || true", check_error=False)
    write_remote_file(ssh, BBR_MODULES_FILE, 'tcp_bbr\n')
    write_remote_file(ssh, SYSCTL_FILE_PATH, get_sysctl_conf())

    exit_code, _ = run_command_status(ssh, f"sysctl -p {SYSCTL_FILE_PATH}")
    if exit_code != 0:
        print_warn(msg('sysctl_warn'))

    # CPU frequency scaling for performance
    run_command(ssh, "for g in /sys/devices/system/cpu/cpu*/cpufreq/scaling_governor; do "
                     "echo performance > \"$g\"; done 2>/dev/null || true", check_error=False)
    print_ok(msg('tuning_applied'))


# ---------------------------------------------------------------------------
# Dependency installer – OS packages and the Xray binary
# ---------------------------------------------------------------------------
def install_dependencies(ssh: paramiko.SSHClient, os_info: dict, upgrade: bool = True) -> None:
    pkg_manager = os_info['pkg_manager']
    commands = PKG_COMMANDS.get(pkg_manager)
    if commands is None:
        raise DependencyInstallError(msg('unsupported_pkg_manager', pkg_manager))

    steps = [('update', commands['update'])]
    if upgrade:
        steps.append(('upgrade', commands['upgrade']))
    steps.append(('install', commands['install'].format(packages=' '.join(REQUIRED_PACKAGES))))

    for step, cmd in steps:
        exit_code, _ = run_command_status(ssh, cmd, show_output=True)
        if exit_code != 0:
            raise DependencyInstallError(msg('pkg_step_failed', step, exit_code))

    # Diagnostics (htop, iperf3, ...) are nice to have; some are missing from base repos
    run_command(ssh, commands['install'].format(packages=' '.join(DIAGNOSTIC_PACKAGES)),
                check_error=True, show_output=True)


def install_xray(ssh: paramiko.SSHClient, binary_path: str = XRAY_BINARY_PATH) -> str:
    """Install or upgrade Xray-core with the upstream release script.

    Returns:
        The first line of `xray version`, or '' if it printed nothing
    """
    run_command(ssh, f'bash -c "$(curl -fsSL {XRAY_INSTALL_SCRIPT_URL})" @ install',
                check_error=True, show_output=True)

    check = run_command(ssh, f"test -x {binary_path} && echo 'BINARY_OK' || echo 'BINARY_MISSING'",
                        check_error=False)
    if 'BINARY_OK' not in check:
        raise BinaryInstallError(msg('xray_install_failed', binary_path))

    version = run_command(ssh, f"{binary_path} version 2>/dev/null | head -1", check_error=False).strip()
    print_ok(msg('xray_installed', version or binary_path))
    return version


# ---------------------------------------------------------------------------
# Key generator – parse `xray x25519` output
# ---------------------------------------------------------------------------
KEY_CHARS = r'[A-Za-z0-9_-]'
_PRIVATE_KEY_RE = re.compile(rf'private.*key:?\s*({KEY_CHARS}+)', re.IGNORECASE)
_PUBLIC_KEY_RE = re.compile(rf'public.*key:?\s*({KEY_CHARS}+)', re.IGNORECASE)
_LONG_TOKEN_RE = re.compile(rf'{KEY_CHARS}{{40,}}')


def _pair_or_none(private_key: str | None, public_key: str | None) -> KeyPair | None:
    if private_key and public_key:
        return KeyPair(private_key=private_key, public_key=public_key)
    return None


def parse_keys_by_label(output: str) -> KeyPair | None:
    """Last token of the first 'private' line and the first 'public' line."""
    private_key = public_key = None
    for line in output.splitlines():
        tokens = line.split()
        if not tokens:
            continue
        lowered = line.lower()
        if private_key is None and 'private' in lowered:
            private_key = tokens[-1]
        elif public_key is None and 'public' in lowered:
            public_key = tokens[-1]
    return _pair_or_none(private_key, public_key)


def parse_keys_by_pattern(output: str) -> KeyPair | None:
    private_key = public_key = None
    for line in output.splitlines():
        match = _PRIVATE_KEY_RE.search(line)
        if match:
            private_key = match.group(1)
            continue
        match = _PUBLIC_KEY_RE.search(line)
        if match:
            public_key = match.group(1)
    return _pair_or_none(private_key, public_key)


def parse_keys_by_length(output: str) -> KeyPair | None:
    """First two long key-like tokens, in order: private, then public.

    Also covers newer xray releases, which print 'PrivateKey:' and
    'Password:' (the public key) instead of the older labels.
    """
    tokens = _LONG_TOKEN_RE.findall(output)
    if len(tokens) < 2:
        return None
    return _pair_or_none(tokens[0], tokens[1])


KEY_PARSERS = (parse_keys_by_label, parse_keys_by_pattern, parse_keys_by_length)


def parse_x25519_output(output: str) -> KeyPair:
    for parser in KEY_PARSERS:
        key_pair = parser(output)
        if key_pair is not None:
            return key_pair
    raise KeyGenerationError(msg('keygen_parse_failed'))


def generate_keypair(ssh: paramiko.SSHClient, binary_path: str = XRAY_BINARY_PATH) -> KeyPair:
    # quiet: the output holds the private key
    exit_code, output = run_command_status(ssh, f"{binary_path} x25519 2>&1", quiet=True)
    if exit_code != 0:
        raise KeyGenerationError(msg('keygen_exec_failed', binary_path, exit_code))
    key_pair = parse_x25519_output(output)
    print_ok(msg('keys_generated'))
    return key_pair


# ---------------------------------------------------------------------------
# Parameter collector
# ---------------------------------------------------------------------------
def generate_short_ids(count: int = DEFAULT_SHORT_ID_COUNT) -> tuple[str, ...]:
    """Random Reality short IDs: 16, 8 and 0 hex chars, first `count` of them."""
    if not 1 <= count <= len(SHORT_ID_LENGTHS):
        raise ParameterError(f"Short ID count must be 1-{len(SHORT_ID_LENGTHS)}, got {count}.")
    return tuple(secrets.token_hex(length // 2) for length in SHORT_ID_LENGTHS[:count])


def parse_port(text: str) -> int:
    """Port from operator input; empty means DEFAULT_PORT."""
    text = text.strip()
    if not text:
        return DEFAULT_PORT
    try:
        port = int(text)
    except ValueError:
        raise ParameterError(msg('error_invalid_port', text)) from None
    if not validate_port(port):
        raise ParameterError(msg('error_invalid_port', text))
    return port


def parse_level(text: str) -> int:
    text = text.strip()
    if not text:
        return DEFAULT_LEVEL
    if not text.isdigit() or int(text) not in OPTIMIZATION_LEVELS:
        raise ParameterError(msg('error_invalid_level', text))
    return int(text)


def resolve_sni(text: str) -> str:
    """SNI from operator input: a domain, a number from the recommended list, or empty."""
    text = text.strip()
    if not text:
        return DEFAULT_SNI
    if text.isdigit() and 1 <= int(text) <= len(RECOMMENDED_SNI_DOMAINS):
        return RECOMMENDED_SNI_DOMAINS[int(text) - 1][0]
    return text


def build_policy(level: int, tuning: TuningProfile, handshake: int | None = None,
                 conn_idle: int | None = None, buffer_size_kb: int | None = None) -> PolicySettings:
    """Policy for a level, with explicit values taking precedence."""
    preset = OPTIMIZATION_LEVELS[level]
    return PolicySettings(
        handshake=preset.handshake if handshake is None else handshake,
        conn_idle=preset.conn_idle if conn_idle is None else conn_idle,
        uplink_only=preset.uplink_only,
        downlink_only=preset.downlink_only,
        buffer_size_kb=tuning.buffer_size_kb if buffer_size_kb is None else buffer_size_kb,
    )


def _ask(prompt: str, interactive: bool) -> str:
    if not interactive:
        return ''
    return input(prompt).strip()


def collect_params(args: argparse.Namespace, tuning: TuningProfile) -> ProxyProfile:
    """Gather proxy parameters from CLI args, prompts and defaults.

    Command-line values win; otherwise the operator is prompted (unless
    --yes) and empty answers fall back to the documented defaults.
    """
    interactive = not args.yes

    client_id = args.uuid or _ask(msg('enter_uuid'), interactive)
    if not client_id:
        client_id = str(uuid.uuid4())
        print(msg('generated_uuid', client_id))

    if args.port is not None:
        listen_port = args.port
    else:
        if interactive:
            print(msg('recommended_ports'))
        listen_port = parse_port(_ask(msg('enter_port'), interactive))

    if args.sni:
        sni_domain = args.sni
    else:
        if interactive:
            print(msg('recommended_sni'))
            for i, (domain, note) in enumerate(RECOMMENDED_SNI_DOMAINS, 1):
                print(f"    {i}. {domain} ({note})")
        sni_domain = resolve_sni(_ask(msg('enter_sni', DEFAULT_SNI), interactive))
    print(msg('selected_sni', sni_domain))

    if args.level is not None:
        level = args.level
    else:
        if interactive:
            print(msg('optimization_levels'))
            for number, preset in OPTIMIZATION_LEVELS.items():
                print(f"    {number}. {preset.name} (flow: {preset.flow or 'none'})")
        level = parse_level(_ask(msg('enter_level'), interactive))

    return ProxyProfile(
        client_id=client_id,
        listen_port=listen_port,
        sni_domain=sni_domain,
        optimization_level=level,
        short_ids=generate_short_ids(args.short_ids),
        policy=build_policy(level, tuning, args.handshake_timeout, args.conn_idle, args.buffer_size),
        label=args.name or f"Xray_Reality_{level}",
        log_level='debug' if args.debug else 'warning',
        enable_api=args.enable_api,
        block_ads=args.block_ads,
    )


# ---------------------------------------------------------------------------
# Config renderer
# ---------------------------------------------------------------------------
def _sockopt(keepalive_idle: bool) -> dict:
    sockopt = {
        'tcpFastOpen': True,
        'tcpNoDelay': True,
        'tcpKeepAliveInterval': 30,
        'mark': 0,
    }
    if keepalive_idle:
        sockopt['tcpKeepAliveIdle'] = 60
    return sockopt


def build_xray_config(profile: ProxyProfile) -> dict:
    """Xray server configuration for a profile with an attached key pair."""
    if profile.key_pair is None:
        raise ValueError("profile has no key pair; run generate_keypair() first")

    policy = profile.policy
    config = {
        'log': {'loglevel': profile.log_level},
    }
    if profile.enable_api:
        config['stats'] = {}
        config['api'] = {
            'tag': 'api',
            'services': ['HandlerService', 'LoggerService', 'StatsService'],
        }
    config['policy'] = {
        'levels': {
            '0': {
                'handshake': policy.handshake,
                'connIdle': policy.conn_idle,
                'uplinkOnly': policy.uplink_only,
                'downlinkOnly': policy.downlink_only,
                'bufferSize': policy.buffer_size_kb,
                'statsUserUplink': False,
                'statsUserDownlink': False,
            },
        },
        'system': {
            'statsInboundUplink': False,
            'statsInboundDownlink': False,
            'statsOutboundUplink': False,
            'statsOutboundDownlink': False,
        },
    }

    inbounds = [{
        'tag': 'vless-reality',
        'listen': '0.0.0.0',
        'port': profile.listen_port,
        'protocol': 'vless',
        'settings': {
            'clients': [{
                'id': profile.client_id,
                'flow': profile.flow,
                'level': 0,
            }],
            'decryption': 'none',
        },
        'streamSettings': {
            'network': 'tcp',
            'security': 'reality',
            'realitySettings': {
                'show': False,
                'dest': f"{profile.sni_domain}:443",
                'xver': 0,
                'serverNames': [profile.sni_domain],
                'privateKey': profile.key_pair.private_key,
                'minClientVer': '',
                'maxClientVer': '',
                'maxTimeDiff': 0,
                'shortIds': list(profile.short_ids),
            },
            'sockopt': _sockopt(keepalive_idle=True),
        },
        'sniffing': {'enabled': False},
    }]
    if profile.enable_api:
        inbounds.append({
            'tag': 'api',
            'listen': '127.0.0.1',
            'port': API_PORT,
            'protocol': 'dokodemo-door',
            'settings': {'address': '127.0.0.1'},
        })
    config['inbounds'] = inbounds

    config['outbounds'] = [
        {
            'tag': 'direct',
            'protocol': 'freedom',
            'settings': {'domainStrategy': 'UseIPv4'},
            'streamSettings': {'sockopt': _sockopt(keepalive_idle=False)},
        },
        {
            'tag': 'blocked',
            'protocol': 'blackhole',
            'settings': {},
        },
    ]

    rules = []
    if profile.enable_api:
        rules.append({'type': 'field', 'inboundTag': ['api'], 'outboundTag': 'api'})
    rules.append({'type': 'field', 'protocol': ['bittorrent'], 'outboundTag': 'blocked'})
    if profile.block_ads:
        rules.append({'type': 'field', 'domain': ['geosite:category-ads-all'], 'outboundTag': 'blocked'})
    config['routing'] = {
        'domainStrategy': 'IPIfNonMatch',
        'rules': rules,
    }
    return config


def render_xray_config(profile: ProxyProfile) -> str:
    return json.dumps(build_xray_config(profile), indent=2) + '\n'


def write_xray_config(ssh: paramiko.SSHClient, profile: ProxyProfile, config_path: str = XRAY_CONFIG_FILE) -> None:
    # quiet: the config carries the Reality private key
    written = write_remote_file(ssh, config_path, render_xray_config(profile), mode='644', quiet=True)
    # an earlier run's config would still pass the existence check
    if not written or not remote_file_exists(ssh, config_path):
        raise ConfigWriteError(msg('config_write_failed', config_path))
    print_ok(msg('config_written', config_path))


# ---------------------------------------------------------------------------
# Service installer – systemd unit and start-up check
# ---------------------------------------------------------------------------
def get_systemd_unit(binary_path: str = XRAY_BINARY_PATH, config_path: str = XRAY_CONFIG_FILE,
                     user: str = DEFAULT_SERVICE_USER, priority_boost: bool = True) -> str:
    """Render the xray.service unit.

    Args:
        binary_path: Xray binary used in ExecStart
        config_path: Config passed with -config
        user: Account the service runs as
        priority_boost: Raise CPU and IO scheduling priority
    """
    if user == 'root':
        identity = 'User=root'
    else:
        identity = f'''User={user}
CapabilityBoundingSet=CAP_NET_ADMIN CAP_NET_BIND_SERVICE
AmbientCapabilities=CAP_NET_ADMIN CAP_NET_BIND_SERVICE
NoNewPrivileges=true'''

    priority = ''
    if priority_boost:
        priority = '''
# Low-latency scheduling
Nice=-10
CPUSchedulingPolicy=rr
CPUSchedulingPriority=50
IOSchedulingClass=realtime
IOSchedulingPriority=4'''

    return f'''[Unit]
Description=Xray Service (VLESS Reality)
Documentation=https://github.com/xtls
After=network.target nss-lookup.target

[Service]
Type=simple
{identity}
ExecStart={binary_path} run -config {config_path}
Restart=on-failure
RestartSec=2
RestartPreventExitStatus=23
LimitNOFILE=1000000
LimitNPROC=10000{priority}

[Install]
WantedBy=multi-user.target
'''


def install_xray_service(ssh: paramiko.SSHClient, user: str = DEFAULT_SERVICE_USER, priority_boost: bool = True) -> None:
    unit = get_systemd_unit(user=user, priority_boost=priority_boost)
    if not write_remote_file(ssh, SERVICE_FILE_PATH, unit):
        raise ConfigWriteError(msg('config_write_failed', SERVICE_FILE_PATH))
    run_command(ssh, "systemctl daemon-reload")
    print_ok(msg('service_written', SERVICE_FILE_PATH))


def start_xray_service(ssh: paramiko.SSHClient, wait: int = SERVICE_START_WAIT) -> None:
    """Enable and (re)start xray; raise ServiceStartError unless it ends up active."""
    run_command(ssh, f"systemctl enable {XRAY_SERVICE_NAME}", check_error=False)
    run_command(ssh, f"systemctl restart {XRAY_SERVICE_NAME}", check_error=False)

    time.sleep(wait)

    state = run_command(ssh, f"systemctl is-active {XRAY_SERVICE_NAME} 2>/dev/null", check_error=False).strip()
    if state == 'active':
        print_ok(msg('service_started'))
        return

    print_err(msg('service_logs'))
    journal = run_command(
        ssh, f"journalctl -u {XRAY_SERVICE_NAME} --no-pager -n {JOURNAL_TAIL_LINES} 2>&1",
        check_error=False, show_output=True)
    raise ServiceStartError(msg('service_failed', wait, state or 'unknown'), journal=journal)


def open_firewall_port(ssh: paramiko.SSHClient, port: int) -> None:
    """Allow the listening port through ufw or firewalld, whichever exists."""
    if 'FOUND' in run_command(ssh, "command -v ufw >/dev/null 2>&1 && echo FOUND || echo MISSING",
                              check_error=False):
        run_command(ssh, f"ufw allow {port}/tcp")
        print_ok(msg('firewall_ufw', port))
    elif 'FOUND' in run_command(ssh, "command -v firewall-cmd >/dev/null 2>&1 && echo FOUND || echo MISSING",
                                check_error=False):
        run_command(ssh, f"firewall-cmd --permanent --add-port={port}/tcp")
        run_command(ssh, "firewall-cmd --reload")
        print_ok(msg('firewall_firewalld', port))
    else:
        print_warn(msg('firewall_none', port))


# ---------------------------------------------------------------------------
# Reporter – public IP, share link, summary
# ---------------------------------------------------------------------------
def get_public_ip(ssh: paramiko.SSHClient, fallback: str | None = None) -> str:
    """Public address of the host, asking each provider in turn."""
    for provider in PUBLIC_IP_PROVIDERS:
        candidate = run_command(ssh, f"curl -s --max-time {IP_LOOKUP_TIMEOUT} {provider}",
                                check_error=False).strip()
        try:
            ipaddress.ip_address(candidate)
        except ValueError:
            continue
        return candidate
    address = fallback or PUBLIC_IP_PLACEHOLDER
    print_warn(msg('ip_lookup_failed', address))
    return address


def format_server_addr(ip: str, port: int) -> str:
    """Format server address with port, handling IPv6 properly."""
    try:
        ipaddress.IPv6Address(ip)
        return f"[{ip}]:{port}"
    except ValueError:
        return f"{ip}:{port}"


def build_share_link(client_id: str, host: str, port: int, sni: str, flow: str,
                     public_key: str, short_id: str, label: str) -> str:
    """vless:// URI in the field order clients expect."""
    query = urllib.parse.urlencode({
        'security': 'reality',
        'sni': sni,
        'flow': flow,
        'pbk': public_key,
        'sid': short_id,
        'type': 'tcp',
        'headerType': 'none',
    }, quote_via=urllib.parse.quote)
    identity = urllib.parse.quote(client_id, safe='')
    fragment = urllib.parse.quote(label, safe='')
    return f"vless://{identity}@{format_server_addr(host, port)}?{query}#{fragment}"


def share_link_for(profile: ProxyProfile, host: str) -> str:
    return build_share_link(
        client_id=profile.client_id,
        host=host,
        port=profile.listen_port,
        sni=profile.sni_domain,
        flow=profile.flow,
        public_key=profile.key_pair.public_key,
        short_id=profile.primary_short_id,
        label=profile.label,
    )


def get_connection_summary(profile: ProxyProfile, host: str) -> str:
    """Human-readable connection details; never includes the private key."""
    level = OPTIMIZATION_LEVELS[profile.optimization_level]
    short_ids = ', '.join(s for s in profile.short_ids if s)
    return f'''# Xray VLESS + Reality connection info
# Generated by setup_reality.py on {datetime.now().strftime('%Y-%m-%d %H:%M')}

Protocol: VLESS + XTLS Reality
Server IP: {host}
Port: {profile.listen_port}
UUID: {profile.client_id}
Flow: {profile.flow or 'none'}
Security: reality
SNI: {profile.sni_domain}
Public Key: {profile.key_pair.public_key}
Short IDs: {short_ids or '(empty)'}
Optimization Level: {profile.optimization_level} ({level.name})

Share Link:
{share_link_for(profile, host)}
'''


def save_connection_info(save_dir: Path, summary: str, share_link: str) -> Path:
    """Save the summary and share link to a local directory."""
    save_dir.mkdir(parents=True, exist_ok=True)
    info_file = save_dir / 'connection-info.txt'
    with open(info_file, 'w', encoding='utf-8') as f:
        f.write(summary)
    with open(save_dir / 'share-link.txt', 'w', encoding='utf-8') as f:
        f.write(share_link + '\n')
    try:
        os.chmod(info_file, 0o600)
    except OSError:
        pass  # Windows doesn't support chmod the same way
    return info_file


def report(ssh: paramiko.SSHClient, profile: ProxyProfile, conn: ConnectionParams) -> str:
    """Print the summary, save it on the host (and locally when asked).

    Returns:
        The share link
    """
    host = get_public_ip(ssh, fallback=None if conn.local_mode else conn.server_ip)
    congestion = run_command(ssh, "cat /proc/sys/net/ipv4/tcp_congestion_control 2>/dev/null",
                             check_error=False).strip()
    if congestion:
        print(msg('congestion_control', congestion))

    summary = get_connection_summary(profile, host)
    share_link = share_link_for(profile, host)
    write_remote_file(ssh, INFO_FILE_PATH, summary, mode='600', quiet=True)

    print("\n" + fmt_banner("=" * 60))
    print(fmt_ok(f"  {msg('setup_complete')}"))
    print(fmt_banner("=" * 60))
    print(summary)
    print(fmt_step(msg('share_link')))
    print(share_link)
    print(fmt_info(f"\n{msg('info_saved_host', INFO_FILE_PATH)}"))
    if conn.save_dir is not None:
        # the host copy is already written, a local failure is not fatal
        try:
            info_file = save_connection_info(conn.save_dir, summary, share_link)
        except OSError as e:
            print_warn(msg('info_save_local_failed', e))
        else:
            print(fmt_info(msg('info_saved_local', info_file)))
    print(fmt_banner("=" * 60))
    return share_link


# ---------------------------------------------------------------------------
# CLI & pipeline
# ---------------------------------------------------------------------------
def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Xray VLESS + Reality Server Setup")
    target = parser.add_argument_group('target host')
    target.add_argument('--server', '--host', type=str, default=None, dest='server',
                        help='Remote server IP (default: install on this machine)')
    target.add_argument('--local', action='store_true',
                        help='Install on this machine even if --server is given')
    target.add_argument('--ssh-port', type=int, default=None, help='SSH port (default: 22)')
    target.add_argument('--user', type=str, default=None, help='SSH username (default: root)')
    target.add_argument('--password', type=str, default=None, help='SSH password (prompted if omitted)')
    target.add_argument('--key-auth', action='store_true', help='Use SSH key authentication')
    target.add_argument('--privkey', type=str, default=None,
                        help='SSH private key for --key-auth (default: ~/.ssh/id_ed25519 or id_rsa)')
    target.add_argument('--key-passphrase', type=str, default=None,
                        help='Passphrase for an encrypted private key')

    proxy = parser.add_argument_group('proxy')
    proxy.add_argument('--uuid', type=str, default=None, help='Client UUID (default: random)')
    proxy.add_argument('--port', type=int, default=None, help=f'Listening port (default: {DEFAULT_PORT})')
    proxy.add_argument('--sni', type=str, default=None, help=f'Reality SNI domain (default: {DEFAULT_SNI})')
    proxy.add_argument('--level', type=int, default=None, choices=sorted(OPTIMIZATION_LEVELS),
                       help='Optimization level: 1 ultra low latency, 2 balanced, 3 high throughput')
    proxy.add_argument('--short-ids', type=int, default=DEFAULT_SHORT_ID_COUNT, choices=[1, 2, 3],
                       help='Number of Reality short IDs (16, 8 and 0 hex chars)')
    proxy.add_argument('--name', type=str, default=None, help='Label for the share link')
    proxy.add_argument('--enable-api', action='store_true', help='Enable the stats API on 127.0.0.1')
    proxy.add_argument('--block-ads', action='store_true', help='Route ad domains to the blackhole')

    tuning = parser.add_argument_group('tuning')
    tuning.add_argument('--handshake-timeout', type=int, default=None,
                        help='Policy handshake timeout in seconds (default: per level)')
    tuning.add_argument('--conn-idle', type=int, default=None,
                        help='Policy idle timeout in seconds (default: per level)')
    tuning.add_argument('--buffer-size', type=int, default=None,
                        help='Policy buffer size in KB (default: from host RAM)')
    tuning.add_argument('--service-user', type=str, default=DEFAULT_SERVICE_USER,
                        help=f'Account the xray service runs as (default: {DEFAULT_SERVICE_USER})')
    tuning.add_argument('--no-priority-boost', action='store_true',
                        help='Do not raise CPU/IO scheduling priority of the service')
    tuning.add_argument('--skip-tuning', action='store_true', help='Do not touch kernel network parameters')
    tuning.add_argument('--skip-upgrade', action='store_true', help='Do not upgrade installed packages')

    parser.add_argument('--save-config', type=str, default=None,
                        help='Local directory for connection-info.txt and share-link.txt')
    parser.add_argument('--debug', action='store_true', help="Xray log level 'debug'")
    parser.add_argument('--yes', '-y', action='store_true', help='Use defaults instead of prompting')
    parser.add_argument('--lang', '--language', type=str, default=None, dest='lang', choices=['en', 'zh'],
                        help='Interface language (default: en in non-interactive mode)')

    return parser.parse_args(argv)


def validate_args(args: argparse.Namespace) -> None:
    """Range checks argparse cannot express; raise ParameterError."""
    for name in ('port', 'ssh_port'):
        value = getattr(args, name)
        if value is not None and not validate_port(value):
            raise ParameterError(f"--{name.replace('_', '-')}: {msg('error_invalid_port', value)}")
    if args.server and not validate_ip_address(args.server):
        raise ParameterError(msg('error_invalid_ip', args.server))


def select_language(args: argparse.Namespace) -> None:
    global LANG
    if args.lang:
        LANG = args.lang
    elif args.yes:
        LANG = 'en'
    else:
        lang_input = input(MESSAGES['en']['select_language']).strip().lower()
        LANG = 'zh' if lang_input in ('zh', 'cn', 'chinese', '中文') else 'en'


def get_default_privkey_path() -> Path:
    ssh_dir = Path.home() / '.ssh'
    for name in ('id_ed25519', 'id_ecdsa', 'id_rsa'):
        candidate = ssh_dir / name
        if candidate.exists():
            return candidate
    return ssh_dir / 'id_rsa'


def collect_connection_params(args: argparse.Namespace) -> ConnectionParams:
    """Work out where to install and how to log in there."""
    conn = ConnectionParams()
    if args.save_config:
        conn.save_dir = Path(args.save_config).expanduser()

    server_ip = args.server
    if server_ip is None and not args.local and not args.yes:
        server_ip = input(msg('enter_server_ip')).strip() or None
        if server_ip and not validate_ip_address(server_ip):
            raise ParameterError(msg('error_invalid_ip', server_ip))

    if args.local or server_ip is None:
        return conn
    if is_local_ip(server_ip):
        print(msg('local_ip_detected', server_ip))
        return conn

    conn.local_mode = False
    conn.server_ip = server_ip
    if conn.save_dir is None:
        time_str = datetime.now().strftime('%Y-%m-%d_%H-%M')
        safe_name = re.sub(r'[<>:"/\\|?*]', '-', server_ip)
        conn.save_dir = Path.cwd() / f"xray-{safe_name}-{time_str}"

    if args.ssh_port:
        conn.ssh_port = args.ssh_port
    elif not args.yes:
        port_input = input(msg('enter_ssh_port')).strip()
        if port_input:
            if not port_input.isdigit() or not validate_port(int(port_input)):
                raise ParameterError(msg('error_invalid_port', port_input))
            conn.ssh_port = int(port_input)
    conn.username = args.user or (input(msg('enter_username')).strip() if not args.yes else '') or 'root'

    if args.key_auth:
        conn.use_key_auth = True
        conn.privkey_path = Path(args.privkey).expanduser() if args.privkey else get_default_privkey_path()
        if args.key_passphrase:
            conn.privkey_passphrase = args.key_passphrase
        elif not args.yes:
            conn.privkey_passphrase = getpass.getpass(msg('enter_privkey_passphrase')) or None
    else:
        conn.password = args.password or getpass.getpass(msg('enter_password'))
        if not conn.password:
            raise ParameterError(msg('error_password_required'))
    return conn


def run_setup(ssh: paramiko.SSHClient, args: argparse.Namespace, conn: ConnectionParams) -> ProxyProfile:
    """Run every stage in order; the first SetupError aborts the run."""
    print_step(f"\n{msg('step1_preflight')}")
    check_privileges(ssh)
    os_info = detect_os(ssh)
    print(msg('detected_os', os_info['os_name'] or os_info['os_type'], os_info['pkg_manager']))
    tuning = detect_host_resources(ssh)
    print(msg('host_resources', tuning.cpu_cores, tuning.total_ram_mb, tuning.buffer_size_kb))

    print_step(f"\n{msg('step2_params')}")
    profile = collect_params(args, tuning)

    print_step(f"\n{msg('step3_tuning')}")
    if args.skip_tuning:
        print(msg('skip_tuning'))
    else:
        apply_network_tuning(ssh)

    print_step(f"\n{msg('step4_packages')}")
    install_dependencies(ssh, os_info, upgrade=not args.skip_upgrade)

    print_step(f"\n{msg('step5_xray')}")
    install_xray(ssh)

    print_step(f"\n{msg('step6_keys')}")
    profile = replace(profile, key_pair=generate_keypair(ssh))

    print_step(f"\n{msg('step7_config')}")
    write_xray_config(ssh, profile)

    print_step(f"\n{msg('step8_service')}")
    install_xray_service(ssh, user=args.service_user, priority_boost=not args.no_priority_boost)
    open_firewall_port(ssh, profile.listen_port)
    start_xray_service(ssh)

    print_step(f"\n{msg('step9_report')}")
    report(ssh, profile, conn)
    return profile


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    select_language(args)

    print(fmt_banner("=" * 60))
    print(fmt_banner(f"  {msg('title')}"))
    print(fmt_banner("=" * 60))

    try:
        validate_args(args)
        conn = collect_connection_params(args)
        ssh = connect_host(conn)
    except SetupError as e:
        print_err(msg('setup_failed', e))
        return 1

    try:
        run_setup(ssh, args, conn)
    except SetupError as e:
        print_err(msg('setup_failed', e))
        return 1
    finally:
        ssh.close()
        if not conn.local_mode:
            print(f"\n{msg('host_closed')}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
