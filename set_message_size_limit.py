#!/usr/bin/env python3

import json
import os
import re
import subprocess
import sys
import boto3
import onevizion
import xmlhelper

from onevizion import Message
from xml.etree import ElementTree

USAGE = 'Usage: set-message-size-limit.py <limit-bytes> [service[,service...]|all] [server[,server...]] [-b] [-r] [-n] [-v]\n' \
        '  -b  backup every file before it is overwritten\n' \
        '  -r  restart IIS on servers where files were changed\n' \
        '  -n  dry run, report changes without writing\n' \
        '  -v  verbose trace messages'

BYTES = 'bytes'
KILOBYTES = 'kb'


class LimitPatch:
    def __init__(self, unit=BYTES):
        self.unit = unit

    def value_for(self, limit):
        if self.unit == KILOBYTES:
            return xmlhelper.round_up_to_kilobytes(limit)
        return limit

    def apply(self, tree, limit):
        raise NotImplementedError


class AttributePatch(LimitPatch):
    def __init__(self, path, attr_name, unit=BYTES):
        super().__init__(unit)
        self.path = path
        self.attr_name = attr_name

    def apply(self, tree, limit):
        new_value = str(self.value_for(limit))
        old_value = xmlhelper.set_attribute(tree, self.path, self.attr_name, new_value)
        return [AttributeChange(self.path, self.attr_name, old_value, new_value)]


class ExistingAttributesPatch(AttributePatch):
    """Sets attribute on every element matching path, elements are never created"""

    def apply(self, tree, limit):
        new_value = str(self.value_for(limit))
        return [AttributeChange(xmlhelper.element_path(tree, node).lstrip('/'), self.attr_name, old_value, new_value)
                for node, old_value in xmlhelper.set_existing_attributes(tree, self.path, self.attr_name, new_value)]


class AppSettingPatch(LimitPatch):
    def __init__(self, key, unit=BYTES):
        super().__init__(unit)
        self.key = key

    def apply(self, tree, limit):
        new_value = str(self.value_for(limit))
        old_value = xmlhelper.set_app_setting(tree, self.key, new_value)
        return [AttributeChange(f"configuration/appSettings/add[@key='{self.key}']", 'value', old_value, new_value)]


class Settings:
    DEFAULT_INSTALL_PATH = r'C:\Program Files\Microsoft\Exchange Server\V15'
    INSTALL_PATH = os.getenv('MAIL_INSTALL_PATH') or DEFAULT_INSTALL_PATH
    SERVERS = os.getenv('MAIL_SERVERS', '')
    AWS_SSM_PARAMETER_NAME = os.getenv('MESSAGE_SIZE_SSM_PARAMETER')
    AWS_SSM_REGION = os.getenv('AWS_SSM_REGION', 'us-east-1')
    WEB_SERVER_RESTART_COMMAND = 'iisreset'
    CONFIG_FILE_NAME = 'web.config'

    REQUEST_LIMITS = AttributePatch(
        'configuration/system.webServer/security/requestFiltering/requestLimits', 'maxAllowedContentLength')
    HTTP_RUNTIME = AttributePatch('configuration/system.web/httpRuntime', 'maxRequestLength', KILOBYTES)
    EWS_HTTPS_TRANSPORT = ExistingAttributesPatch(
        'configuration/system.serviceModel/bindings/customBinding/binding/httpsTransport', 'maxReceivedMessageSize')
    ACTIVESYNC_DOCUMENT_SIZE = AppSettingPatch('MaxDocumentDataSize')

    # service -> [(directory relative to install path, patches)]
    SERVICE_CONFIG_FILES = {
        'owa': [
            (('FrontEnd', 'HttpProxy', 'owa'), (REQUEST_LIMITS, HTTP_RUNTIME)),
            (('ClientAccess', 'Owa'), (REQUEST_LIMITS, HTTP_RUNTIME))
        ],
        'ecp': [
            (('FrontEnd', 'HttpProxy', 'ecp'), (REQUEST_LIMITS, HTTP_RUNTIME)),
            (('ClientAccess', 'ecp'), (REQUEST_LIMITS, HTTP_RUNTIME))
        ],
        'ews': [
            (('FrontEnd', 'HttpProxy', 'ews'), (REQUEST_LIMITS,)),
            (('ClientAccess', 'exchweb', 'ews'), (REQUEST_LIMITS, EWS_HTTPS_TRANSPORT))
        ],
        'activesync': [
            (('FrontEnd', 'HttpProxy', 'Sync'), (REQUEST_LIMITS,)),
            (('ClientAccess', 'Sync'), (REQUEST_LIMITS, HTTP_RUNTIME, ACTIVESYNC_DOCUMENT_SIZE))
        ]
    }


class AttributeChange:
    def __init__(self, path, attr_name, old_value, new_value):
        self.path = path
        self.attr_name = attr_name
        self.old_value = old_value
        self.new_value = new_value

    def is_changed(self):
        return self.old_value != self.new_value

    def __str__(self):
        return "{path}@{attr_name} changed from '{old_value}' to '{new_value}'".format(
            path=self.path,
            attr_name=self.attr_name,
            old_value=self.old_value if self.old_value is not None else xmlhelper.NOT_AVAILABLE,
            new_value=self.new_value
        )


class FileChanges:
    def __init__(self, file_path, attribute_changes, backup_path=None, written=False):
        self.file_path = file_path
        self.attribute_changes = attribute_changes
        self.backup_path = backup_path
        self.written = written

    def is_changed(self):
        return any(change.is_changed() for change in self.attribute_changes)

    def generate_report(self):
        if not self.is_changed():
            return f'{self.file_path}: no changes'

        report_message = f'{self.file_path}:'
        for change in self.attribute_changes:
            if change.is_changed():
                report_message += f'\n-->{change}'
        if self.backup_path is not None:
            report_message += f'\n-->backup {self.backup_path}'
        if not self.written:
            report_message += '\n-->not written (dry run)'
        return report_message


class ServerChanges:
    def __init__(self, server):
        self.server = server
        self.file_changes = []
        self.failures = []

    def is_config_changed(self):
        return any(file_changes.written for file_changes in self.file_changes)

    def has_failures(self):
        return len(self.failures) > 0

    def generate_report(self):
        report_message = 'Server {server}: {changed} of {total} files changed'.format(
            server=self.server or 'localhost',
            changed=len([file_changes for file_changes in self.file_changes if file_changes.is_changed()]),
            total=len(self.file_changes) + len(self.failures)
        )
        for file_changes in self.file_changes:
            report_message += '\n' + file_changes.generate_report()
        for file_path, error in self.failures:
            report_message += f'\n{file_path}: FAILED {error}'
        return report_message


# region AWS
def fetch_configuration_from_ssm(parameter_name, region_name):
    aws_client = boto3.client('ssm', region_name=region_name)
    parameters = aws_client.get_parameters(Names=[parameter_name], WithDecryption=True)
    values = [item['Value'] for item in parameters['Parameters'] if item['Name'] == parameter_name]
    if len(values) == 0:
        raise Exception(f'SSM parameter {parameter_name} is not found')

    return json.loads(values[0])


# endregion


# region Help functions
def parse_limit(value):
    if not value.isdecimal():
        return None
    limit = int(value)
    return limit if limit > 0 else None


def parse_services(value):
    if value.lower() == 'all':
        return list(Settings.SERVICE_CONFIG_FILES)

    services = [service.strip().lower() for service in value.split(',') if service.strip()]
    if len(services) == 0:
        raise Exception(f'No services given: {value}')
    unknown_services = [service for service in services if service not in Settings.SERVICE_CONFIG_FILES]
    if len(unknown_services) > 0:
        raise Exception('Unknown services: {unknown}. Supported: {supported}'.format(
            unknown=', '.join(unknown_services),
            supported=', '.join(Settings.SERVICE_CONFIG_FILES)
        ))
    return services


def split_servers(value):
    return [server.strip() for server in value.split(',') if server.strip()]


def resolve_targets(cli_servers=None):
    """Install path and servers to configure

    Command line servers win over the SSM parameter, the SSM parameter wins over
    MAIL_SERVERS/MAIL_INSTALL_PATH. No servers means the local installation.

    """

    install_path = Settings.INSTALL_PATH
    servers = split_servers(Settings.SERVERS)

    if Settings.AWS_SSM_PARAMETER_NAME:
        ssm_config = fetch_configuration_from_ssm(Settings.AWS_SSM_PARAMETER_NAME, Settings.AWS_SSM_REGION)
        install_path = ssm_config.get('install-path') or install_path
        if ssm_config.get('servers'):
            ssm_servers = ssm_config['servers']
            servers = split_servers(ssm_servers) if isinstance(ssm_servers, str) else list(ssm_servers)

    if cli_servers:
        servers = split_servers(cli_servers)

    return install_path, servers or [None]


def server_install_path(server, install_path):
    if not server or server.lower() in ('localhost', '.'):
        return install_path

    match = re.match(r'^([A-Za-z]):[\\/]*(.*)$', install_path)
    if match is None:
        raise Exception(f'Unable to build path on {server}: install path {install_path} has no drive letter')

    return '\\\\{server}\\{drive}$\\{rest}'.format(
        server=server,
        drive=match.group(1).upper(),
        rest=match.group(2)
    )


# endregion


def patch_config_file(file_path, patches, limit, backup=False, dry_run=False):
    tree = xmlhelper.load_xml(file_path)
    existing_elements = set(tree.iter())

    attribute_changes = [change for patch in patches for change in patch.apply(tree, limit)]
    file_changes = FileChanges(file_path, attribute_changes)

    if not file_changes.is_changed():
        return file_changes

    xmlhelper.indent_new_elements(tree, existing_elements)

    if dry_run:
        Message(xmlhelper.prettify_xml(tree.getroot()), 1)
        return file_changes

    if backup:
        file_changes.backup_path = xmlhelper.backup_file(file_path)
    xmlhelper.save_xml(tree, file_path)
    file_changes.written = True
    return file_changes


def configure_server(server, services, limit, install_path, backup=False, dry_run=False):
    server_changes = ServerChanges(server)
    base_path = server_install_path(server, install_path)

    for service in services:
        for directory, patches in Settings.SERVICE_CONFIG_FILES[service]:
            file_path = os.path.join(base_path, *directory, Settings.CONFIG_FILE_NAME)
            Message(f'Patching {service} config {file_path}', 1)
            try:
                server_changes.file_changes.append(patch_config_file(file_path, patches, limit, backup, dry_run))
            except (OSError, ElementTree.ParseError, xmlhelper.XmlPathError) as e:
                Message(f'Unable to patch {file_path}: {e}')
                server_changes.failures.append((file_path, e))

    return server_changes


def restart_web_server(server=None):
    command = [Settings.WEB_SERVER_RESTART_COMMAND]
    if server:
        command.append(server)

    Message(f"Restarting web server on {server or 'localhost'}")
    subprocess.run(command, check=True)


def main(argv=None):
    args = sys.argv[1:] if argv is None else argv
    flags = {arg.lower() for arg in args if arg.startswith('-')}
    positional = [arg for arg in args if not arg.startswith('-')]

    unknown_flags = flags - {'-b', '-r', '-n', '-v'}
    if len(positional) < 1 or len(positional) > 3 or len(unknown_flags) > 0:
        print(USAGE)
        return 1

    limit = parse_limit(positional[0])
    if limit is None:
        print(f'Limit must be a positive number of bytes: {positional[0]}')
        print(USAGE)
        return 1

    if '-v' in flags:
        onevizion.Config['Verbosity'] = 1

    try:
        services = parse_services(positional[1] if len(positional) > 1 else 'all')
    except Exception as e:
        Message(str(e))
        return 1

    install_path, servers = resolve_targets(positional[2] if len(positional) > 2 else None)
    backup = '-b' in flags
    dry_run = '-n' in flags

    Message('Setting message size limit to {limit} bytes ({kb} KB) for {services}'.format(
        limit=limit,
        kb=xmlhelper.round_up_to_kilobytes(limit),
        services=', '.join(services)
    ))

    exit_code = 0
    for server in servers:
        server_changes = configure_server(server, services, limit, install_path, backup, dry_run)
        Message(server_changes.generate_report())

        if server_changes.has_failures():
            exit_code = 2
        elif '-r' in flags and server_changes.is_config_changed():
            restart_web_server(server)

    return exit_code


if __name__ == '__main__':
    sys.exit(main())
