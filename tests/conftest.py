import os

import onevizion
import pytest

import set_message_size_limit
from set_message_size_limit import Settings

WEB_CONFIG = """<?xml version="1.0" encoding="utf-8"?>
<configuration>
    <!-- web.config of {service} -->
    <system.web>
        <httpRuntime maxRequestLength="30000" />
    </system.web>
    <system.webServer>
        <security>
            <requestFiltering>
                <requestLimits maxAllowedContentLength="30000000" />
            </requestFiltering>
        </security>
    </system.webServer>
</configuration>
"""


@pytest.fixture
def install_path(tmp_path, monkeypatch):
    """Local installation with a web.config for every known service directory"""

    for files in Settings.SERVICE_CONFIG_FILES.values():
        for directory, _ in files:
            service_dir = tmp_path.joinpath(*directory)
            service_dir.mkdir(parents=True, exist_ok=True)
            service_dir.joinpath(Settings.CONFIG_FILE_NAME).write_text(
                WEB_CONFIG.format(service='/'.join(directory)), encoding='utf-8')

    monkeypatch.setattr(Settings, 'INSTALL_PATH', str(tmp_path))
    monkeypatch.setattr(Settings, 'SERVERS', '')
    monkeypatch.setattr(Settings, 'AWS_SSM_PARAMETER_NAME', None)
    monkeypatch.setitem(onevizion.Config, 'Verbosity', 0)
    return tmp_path


@pytest.fixture
def restarts(monkeypatch):
    calls = []

    def fake_run(command, check=False):
        calls.append(command)

    monkeypatch.setattr(set_message_size_limit.subprocess, 'run', fake_run)
    return calls


def config_path(install_path, *directory):
    return os.path.join(str(install_path), *directory, Settings.CONFIG_FILE_NAME)
