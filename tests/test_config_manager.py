import pytest

from fcsandbox.config_manager import ConfigManager, parse_env_file
from fcsandbox.exceptions import NotFound, PrivilegeRequired


def test_parse_env_file(tmp_path):
    env_file = tmp_path / "sandbox.env"
    env_file.write_text(
        "# comment\n"
        "\n"
        "VMS_ROOT=/srv/vms  # inline comment\n"
        "KERNEL_VERSION=\"6.1.100\"\n"
        "not a setting\n"
    )
    assert parse_env_file(env_file) == {'VMS_ROOT': "/srv/vms", 'KERNEL_VERSION': "6.1.100"}
    assert parse_env_file(tmp_path / "missing.env") == {}


def test_defaults(environ):
    config = ConfigManager(environ=environ)
    assert config.vms_dir == config.vms_root / "vms"
    assert config.get('NETWORK_MODE') == "subnet"
    assert config.get('SUBNET_PREFIX') == "172.16"
    assert config.kernel_path().name == "vmlinux-6.1.77"
    assert config.get('KERNEL_URL').endswith("vmlinux-6.1.77")


def test_environment_overrides_file(tmp_path, environ):
    env_file = tmp_path / "sandbox.env"
    env_file.write_text("HOST_IFACE=wlan0\nKERNEL_VERSION=6.1.100\n")

    config = ConfigManager(config_file=env_file, environ=environ)
    assert config.get('HOST_IFACE') == "eth0"
    assert config.get('KERNEL_VERSION') == "6.1.100"


def test_config_file_from_environment(tmp_path, environ):
    env_file = tmp_path / "other.env"
    env_file.write_text("DNS_SERVERS=1.1.1.1\n")
    environ['FCSANDBOX_CONFIG'] = str(env_file)
    assert ConfigManager(environ=environ).get('DNS_SERVERS') == "1.1.1.1"


def test_invalid_network_mode_falls_back(environ, capsys):
    environ['NETWORK_MODE'] = "bridge"
    assert ConfigManager(environ=environ).get('NETWORK_MODE') == "subnet"
    assert "Invalid NETWORK_MODE" in capsys.readouterr().err


def test_get_int(config, capsys):
    assert config.get_int('SSH_MAX_RETRIES', 60) == 3
    config.env_config['LOCK_TIMEOUT'] = "soon"
    assert config.get_int('LOCK_TIMEOUT', 10) == 10
    assert "Invalid LOCK_TIMEOUT" in capsys.readouterr().err


def test_invoking_user_prefers_sudo_user(environ):
    environ['SUDO_USER'] = "alice"
    assert ConfigManager(environ=environ).invoking_user() == "alice"


def test_require_root(config, monkeypatch):
    monkeypatch.setattr(config, "is_root", lambda: False)
    with pytest.raises(PrivilegeRequired):
        config.require_root('build')


def test_vm_config_round_trip(config, tmp_path):
    config.write_vm_config(tmp_path, "dev", ssh_key_path="~/.ssh/id_ed25519.pub", username="bob")
    settings = config.load_vm_config(tmp_path)
    assert settings['USERNAME'] == "bob"
    assert settings['CPUS'] == 4
    assert settings['MEMORY'] == 8192
    assert not settings['SSH_KEY_PATH'].startswith("~")
    assert (tmp_path / "packages.nix").is_file()


def test_vm_config_bad_integer(config, tmp_path, capsys):
    (tmp_path / "config.env").write_text("CPUS=lots\nMEMORY=2048\n")
    settings = config.load_vm_config(tmp_path)
    assert settings['CPUS'] == 4
    assert settings['MEMORY'] == 2048
    assert settings['USERNAME'] is None
    assert "Invalid CPUS" in capsys.readouterr().err


def test_missing_firecracker_binary(config):
    with pytest.raises(NotFound):
        config.check_firecracker_binary()


def test_firecracker_version(config, fake_firecracker):
    fake_firecracker.write_text("#!/bin/sh\necho 'Firecracker v1.7.0'\necho extra\n")
    assert config.check_firecracker_binary() == "Firecracker v1.7.0"
