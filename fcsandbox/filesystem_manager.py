#!/usr/bin/env python3

import os
import pwd
import shutil
import subprocess
import sys
from pathlib import Path

import requests

from .exceptions import ExternalToolFailure, NotFound


# A kernel smaller than this is an error page, not a vmlinux
MIN_KERNEL_SIZE = 1000000


class FilesystemManager:
    """Manages the kernel, rootfs and home volume images of VMs"""

    def __init__(self, config_manager):
        self.config_manager = config_manager

    def _run_command(self, cmd, check=True, capture_output=True, text=True):
        """Helper method to run subprocess commands with consistent error handling"""
        try:
            return subprocess.run(cmd, check=check, capture_output=capture_output, text=text)
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip() if capture_output else None
            raise ExternalToolFailure(
                f"Command failed: {' '.join(cmd)}" + (f"\nError: {stderr}" if stderr else ""),
                cmd=cmd, returncode=e.returncode, stderr=stderr
            )
        except FileNotFoundError:
            raise ExternalToolFailure(f"Command not found: {cmd[0]}", cmd=cmd)

    @staticmethod
    def _remove_partial(path):
        path = Path(path)
        if path.exists():
            try:
                path.unlink()
                print(f"✓ Cleaned up partial file: {path}")
            except OSError:
                pass

    # ---------- Kernel ----------

    def ensure_kernel(self):
        """Download the guest kernel unless it is already present

        Returns:
            Path: Kernel image path
        """
        kernel_path = self.config_manager.kernel_path()
        if kernel_path.is_file():
            print("✓ Kernel already present")
            return kernel_path

        url = self.config_manager.get('KERNEL_URL')
        print(f"Downloading kernel {self.config_manager.get('KERNEL_VERSION')}...")
        kernel_path.parent.mkdir(parents=True, exist_ok=True)
        partial = kernel_path.with_name(kernel_path.name + ".part")

        try:
            with requests.get(url, stream=True, timeout=60) as response:
                response.raise_for_status()
                with open(partial, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=1024 * 1024):
                        f.write(chunk)
        except (requests.exceptions.RequestException, OSError) as e:
            self._remove_partial(partial)
            raise ExternalToolFailure(f"Kernel download failed: {e}. Check URL: {url}")

        if partial.stat().st_size < MIN_KERNEL_SIZE:
            self._remove_partial(partial)
            raise ExternalToolFailure(f"Kernel download failed. File is too small. Check URL: {url}")

        os.replace(partial, kernel_path)
        kernel_path.chmod(0o644)
        print("✓ Kernel downloaded")
        return kernel_path

    # ---------- Root filesystem ----------

    def rootfs_cache_path(self, ubuntu_version):
        return self.config_manager.images_dir / f"ubuntu-{ubuntu_version}-rootfs.ext4"

    def ensure_rootfs_image(self, ubuntu_version, image_size):
        """Return the cached base image, running the builder if it is missing"""
        cache = self.rootfs_cache_path(ubuntu_version)
        if cache.is_file():
            print(f"Using cached rootfs: {cache}")
            return cache

        builder = Path(self.config_manager.get('ROOTFS_BUILDER'))
        if not builder.is_file():
            raise NotFound(f"No cached rootfs at {cache} and rootfs builder {builder} is missing")

        print("Building rootfs (this may take a few minutes)...")
        cache.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._run_command(
                [str(builder), "--image-size", image_size, ubuntu_version, str(cache)],
                capture_output=False
            )
        except ExternalToolFailure:
            self._remove_partial(cache)
            raise
        print("✓ Rootfs image created and cached")
        return cache

    def build_rootfs(self, rootfs_file, ubuntu_version, rootfs_size):
        """Build a VM rootfs by copying the base image and resizing it"""
        rootfs_file = Path(rootfs_file)
        image_file = self.ensure_rootfs_image(ubuntu_version, rootfs_size)

        try:
            print(f"Copying {image_file} -> {rootfs_file}")
            shutil.copy2(image_file, rootfs_file)
            print("✓ Image copied to rootfs location")

            print(f"Resizing rootfs to {rootfs_size}")
            self._run_command(["resize2fs", str(rootfs_file), rootfs_size])
            print(f"✓ Rootfs resized to {rootfs_size}")
        except (ExternalToolFailure, OSError):
            self._remove_partial(rootfs_file)
            raise

        return rootfs_file

    # ---------- Home volume ----------

    def create_home_volume(self, home_file, size):
        """Create an empty ext4 volume of the given size"""
        home_file = Path(home_file)
        print("Creating home volume...")
        try:
            self._run_command(["truncate", "-s", size, str(home_file)])
            self._run_command(["mkfs.ext4", "-F", "-q", "-L", "home", str(home_file)])
        except ExternalToolFailure:
            self._remove_partial(home_file)
            raise
        print(f"✓ Home volume created ({size})")
        return home_file

    # ---------- Guest configuration ----------

    def configure_guest(self, vm_name, vm_dir, settings, guest_ip, gateway_ip):
        """Run the guest configuration hook on the freshly built images

        Returns:
            bool: False if no hook is installed
        """
        hook = Path(self.config_manager.get('CONFIGURE_HOOK'))
        if not (hook.is_file() and os.access(hook, os.X_OK)):
            print(f"Warning: Configure hook {hook} not found, guest is left unconfigured",
                  file=sys.stderr)
            return False

        vm_dir = Path(vm_dir)
        cmd = [
            str(hook),
            "--root", str(vm_dir / "rootfs.ext4"),
            "--home", str(vm_dir / "home.ext4"),
            "--hostname", vm_name,
            "--ip", guest_ip,
            "--gateway", gateway_ip,
            "--dns", self.config_manager.get('DNS_SERVERS'),
            "--user", settings['USERNAME'],
            "--ssh-key", str(vm_dir / "ssh_key.pub"),
        ]
        first_boot = Path(self.config_manager.get('FIRST_BOOT_SCRIPT'))
        if first_boot.is_file():
            cmd += ["--first-boot", str(first_boot)]
        for package_list in ("apt-packages.txt", "packages.nix"):
            if (vm_dir / package_list).is_file():
                cmd += ["--packages", str(vm_dir / package_list)]

        print("Configuring rootfs...")
        self._run_command(cmd, capture_output=False)
        print("✓ Rootfs configured")
        return True

    def copy_ssh_key(self, ssh_key_path, vm_dir):
        target = Path(vm_dir) / "ssh_key.pub"
        shutil.copyfile(ssh_key_path, target)
        return target

    def chown_to_user(self, path, username):
        """Hand a path (recursively) back to the user behind sudo"""
        try:
            entry = pwd.getpwnam(username)
        except KeyError:
            print(f"Warning: Unknown user {username}, ownership not changed", file=sys.stderr)
            return
        path = Path(path)
        paths = [path]
        if path.is_dir():
            paths += list(path.rglob("*"))
        for item in paths:
            try:
                os.chown(item, entry.pw_uid, entry.pw_gid, follow_symlinks=False)
            except OSError as e:
                print(f"Warning: Could not change owner of {item}: {e}", file=sys.stderr)
