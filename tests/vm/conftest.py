"""Expose the QEMU integration fixtures to tests under ``tests/vm``."""

from tests.vm.fixtures import debugfs_executable, guest_images, vm_log_dir  # noqa: F401
