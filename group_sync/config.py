"""
Configuration loading and management for Group Sync.

Every parameter is declared once in OPTIONS. A value is taken from the command
line, then from an environment variable named after the option (prefixed with
'groupsync_'), then from an optional YAML file, then from the declared default.
"""

import os
import logging
import argparse
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml

logger = logging.getLogger(__name__)


ENV_PREFIX = 'groupsync_'
CONFIG_PATH_ENV = 'GROUPSYNC_CONFIG'

DEFAULT_THREADS = 1
SOURCE_TYPES = ('graph', 'ldap')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class MissingRequiredParameterError(ConfigurationError):
    """Raised when a required parameter was not provided."""

    def __init__(self, parameter_name: str):
        self.parameter_name = parameter_name
        super().__init__(f"Missing required parameter: {parameter_name}")


class OptionSpec:
    """Declaration of one configuration parameter."""

    def __init__(self, name: str, help: str, short: Optional[str] = None, flag: bool = False,
                 secret: bool = False, default: Any = None,
                 choices: Optional[Sequence[str]] = None):
        self.name = name
        self.help = help
        self.short = short
        self.flag = flag
        self.secret = secret
        self.default = default
        self.choices = choices

    @property
    def cli_flag(self) -> str:
        return '--' + self.name.replace('_', '-')

    @property
    def env_names(self) -> List[str]:
        env_name = ENV_PREFIX + self.name
        return [env_name, env_name.upper()]

    def __repr__(self) -> str:
        return f"OptionSpec({self.name!r})"


OPTIONS = (
    OptionSpec('group_prefix', short='-g',
               help="Prefix used for selecting groups of interest in the source directory. "
                    "Multiple prefixes may be given separated by commas."),
    OptionSpec('src_type', default='graph', choices=SOURCE_TYPES,
               help="Kind of source directory: 'graph' (Azure AD tenant) or 'ldap' (read-only)"),
    OptionSpec('src_tenant_id', short='-st', help="Tenant-id of the source directory"),
    OptionSpec('src_client_id', short='-sc',
               help="Client-id of the application with read access to the source directory"),
    OptionSpec('src_client_secret', short='-ss', secret=True,
               help="Client-secret of the application with read access to the source directory"),
    OptionSpec('src_client_certificate', short='-scc',
               help="PFX (PKCS12) or PEM file (including private key) used for authentication at "
                    "the source directory. Overrides the client secret."),
    OptionSpec('src_client_certificate_password', secret=True,
               help="Password for opening the source PFX certificate file"),
    OptionSpec('src_ldap_url', help="LDAP server URL when the source type is 'ldap'"),
    OptionSpec('src_ldap_bind_dn', help="Bind DN for the LDAP source"),
    OptionSpec('src_ldap_bind_password', secret=True, help="Bind password for the LDAP source"),
    OptionSpec('src_ldap_base_dn', help="Search base DN for the LDAP source"),
    OptionSpec('dst_tenant_id', short='-dt', help="Tenant-id of the destination directory"),
    OptionSpec('dst_client_id', short='-dc',
               help="Client-id of the application with write access to the destination directory"),
    OptionSpec('dst_client_secret', short='-ds', secret=True,
               help="Client-secret of the application with write access to the destination directory"),
    OptionSpec('dst_client_certificate', short='-dcc',
               help="PFX (PKCS12) or PEM file (including private key) used for authentication at "
                    "the destination directory. Overrides the client secret."),
    OptionSpec('dst_client_certificate_password', secret=True,
               help="Password for opening the destination PFX certificate file"),
    OptionSpec('create_missing_groups', short='-cmg', flag=True,
               help="Create at the destination any missing groups. If not given, only report their absence."),
    OptionSpec('allow_empty_groups', short='-aeg', flag=True,
               help="Also create missing groups that have no members at the source. "
                    "Requires --create-missing-groups."),
    OptionSpec('remove_members', short='-rm', flag=True,
               help="Remove members at the destination that are no longer members of the same "
                    "group at the source."),
    OptionSpec('skip_add_members', flag=True,
               help="Do not add new members at the destination"),
    OptionSpec('preview', short='-p', flag=True,
               help="Preview mode: change nothing at the destination, only log what would be done"),
    OptionSpec('threads', short='-t', default=DEFAULT_THREADS,
               help="Number of threads to run at the same time. Defaults to one single thread."),
    OptionSpec('user_field_name', short='-u',
               help="User attribute used for matching users at both sides, e.g. 'userPrincipalName', "
                    "'onPremisesSamAccountName' or 'employeeId'. Defaults to 'displayName'."),
    OptionSpec('src_user_field_name', short='-su',
               help="User attribute used for matching users at the source. Overrides --user-field-name."),
    OptionSpec('dst_user_field_name', short='-du',
               help="User attribute used for matching users at the destination. Overrides --user-field-name."),
    OptionSpec('log_level', default='INFO', help="Logging level (DEBUG, INFO, WARNING, ERROR)"),
    OptionSpec('log_dir', help="Directory for rotating log files. Logs only to the console if absent."),
    OptionSpec('log_retention_days', default=7, help="Number of daily log files to keep"),
    OptionSpec('notify_email_to', help="Comma separated e-mail recipients for run notifications"),
    OptionSpec('notify_email_from', help="Sender address for run notifications"),
    OptionSpec('smtp_server', help="SMTP server used for notifications"),
    OptionSpec('smtp_port', default=587, help="SMTP port used for notifications"),
    OptionSpec('smtp_username', help="SMTP user name"),
    OptionSpec('smtp_password', secret=True, help="SMTP password"),
    OptionSpec('notify_on_success', flag=True, help="Also send a summary e-mail when the run succeeds"),
)

OPTIONS_BY_NAME = {option.name: option for option in OPTIONS}


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser from the option schema."""
    parser = argparse.ArgumentParser(
        prog='group-sync',
        description="Copy group memberships from a source directory to a destination Azure AD tenant. "
                    "Every option may also be given as an environment variable named "
                    f"'{ENV_PREFIX}<option>' (e.g. {ENV_PREFIX}group_prefix).",
    )
    parser.add_argument('--config', '-c', help="Optional YAML file with option values")
    for option in OPTIONS:
        flags = [option.cli_flag] + ([option.short] if option.short else [])
        if option.flag:
            parser.add_argument(*flags, dest=option.name, action='store_const', const=True,
                                default=None, help=option.help)
        else:
            parser.add_argument(*flags, dest=option.name, default=None, choices=option.choices,
                                help=option.help)
    return parser


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on', 'y')


def _load_yaml(config_path: Optional[str]) -> Dict[str, Any]:
    if not config_path:
        return {}
    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in config file: {e}")
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file must contain a mapping: {config_path}")

    unknown = [key for key in data if key.replace('-', '_') not in OPTIONS_BY_NAME]
    if unknown:
        raise ConfigurationError(f"Unknown options in {config_path}: {', '.join(sorted(unknown))}")
    logger.debug(f"Loaded configuration file {config_path}")
    return {key.replace('-', '_'): value for key, value in data.items()}


class SideSettings:
    """Connection settings for one directory (source or destination)."""

    def __init__(self, name: str, tenant_id: Optional[str] = None, client_id: Optional[str] = None,
                 client_secret: Optional[str] = None, certificate: Optional[str] = None,
                 certificate_password: Optional[str] = None, user_field_name: str = 'displayName',
                 directory_type: str = 'graph', ldap: Optional[Dict[str, Any]] = None):
        self.name = name
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.certificate = certificate
        self.certificate_password = certificate_password
        self.user_field_name = user_field_name
        self.directory_type = directory_type
        self.ldap = ldap or {}

    def __repr__(self) -> str:
        return f"SideSettings({self.name!r}, type={self.directory_type!r}, tenant={self.tenant_id!r})"


class SyncSettings:
    """Validated settings of one sync run."""

    def __init__(self, group_prefix: str, source: SideSettings, destination: SideSettings,
                 create_missing_groups: bool = False, allow_empty_groups: bool = False,
                 remove_members: bool = False, create_members: bool = True, preview: bool = False,
                 threads: int = DEFAULT_THREADS, logging_config: Optional[Dict[str, Any]] = None,
                 notifications: Optional[Dict[str, Any]] = None):
        self.group_prefix = group_prefix
        self.source = source
        self.destination = destination
        self.create_missing_groups = create_missing_groups
        self.allow_empty_groups = allow_empty_groups
        self.remove_members = remove_members
        self.create_members = create_members
        self.preview = preview
        self.threads = threads
        self.logging = logging_config or {}
        self.notifications = notifications or {'enable_email': False}

    @property
    def group_prefixes(self) -> List[str]:
        """Prefixes split on commas, exactly as given."""
        return self.group_prefix.split(',')


class ConfigLoader:
    """Resolves option values from the command line, environment and YAML file."""

    def __init__(self, cli_values: Optional[Mapping[str, Any]] = None,
                 environ: Optional[Mapping[str, str]] = None, config_path: Optional[str] = None):
        self.cli_values = dict(cli_values or {})
        self.environ = os.environ if environ is None else environ
        self.config_path = config_path or self.environ.get(CONFIG_PATH_ENV)
        self.file_values = {}

    def get(self, name: str) -> Any:
        """Return an option value, checking command line, environment and file (in this order)."""
        option = OPTIONS_BY_NAME[name]
        value = self.cli_values.get(name)
        if value is not None:
            return value
        for env_name in option.env_names:
            value = self.environ.get(env_name)
            if value is not None:
                return value
        value = self.file_values.get(name)
        if value is not None:
            return value
        return option.default

    def get_required(self, name: str) -> Any:
        value = self.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise MissingRequiredParameterError(OPTIONS_BY_NAME[name].cli_flag)
        return value

    def get_flag(self, name: str) -> bool:
        value = self.get(name)
        return _parse_bool(value) if value is not None else False

    def describe(self) -> Dict[str, Any]:
        """Effective option values with secrets masked, for diagnostics."""
        described = {}
        for option in OPTIONS:
            value = self.get(option.name)
            if value is None:
                continue
            described[option.name] = '****' if option.secret else value
        return described

    def load(self) -> SyncSettings:
        """
        Load and validate all parameters.

        Returns:
            Validated SyncSettings

        Raises:
            ConfigurationError: If a parameter is missing or invalid
        """
        self.file_values = _load_yaml(self.config_path)

        errors = []
        missing = []

        def required(name):
            try:
                return self.get_required(name)
            except MissingRequiredParameterError as e:
                missing.append(e)
                errors.append(str(e))
                return None

        group_prefix = required('group_prefix')

        source_type = str(self.get('src_type')).lower()
        if source_type not in SOURCE_TYPES:
            errors.append(f"Unknown source type '{source_type}', expected one of: {', '.join(SOURCE_TYPES)}")

        shared_field = self.get('user_field_name') or 'displayName'
        source_field = self.get('src_user_field_name') or shared_field
        destination_field = self.get('dst_user_field_name') or shared_field

        if source_type == 'ldap':
            source = SideSettings(
                'source',
                directory_type='ldap',
                user_field_name=source_field,
                ldap={
                    'server_url': required('src_ldap_url'),
                    'bind_dn': required('src_ldap_bind_dn'),
                    'bind_password': required('src_ldap_bind_password'),
                    'base_dn': self.get('src_ldap_base_dn') or '',
                },
            )
        else:
            source = self._graph_side('source', 'src', source_field, required, errors)

        destination = self._graph_side('destination', 'dst', destination_field, required, errors)

        create_missing_groups = self.get_flag('create_missing_groups')
        allow_empty_groups = self.get_flag('allow_empty_groups')
        if allow_empty_groups and not create_missing_groups:
            errors.append("Parameter '--allow-empty-groups' requires '--create-missing-groups'")

        threads = self._positive_int('threads', errors)
        retention_days = self._positive_int('log_retention_days', errors)
        smtp_port = self._positive_int('smtp_port', errors)

        for field in (source_field, destination_field):
            try:
                # Imported here: identity depends on this module for ConfigurationError
                from group_sync.identity import resolve_identity
                resolve_identity(field)
            except ConfigurationError as e:
                errors.append(str(e))

        if errors:
            if len(errors) == 1 and missing:
                raise missing[0]
            raise ConfigurationError(
                "Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors)
            )

        email_to = self.get('notify_email_to')
        notifications = {
            'enable_email': bool(email_to and self.get('smtp_server')),
            'email_on_failure': True,
            'email_on_success': self.get_flag('notify_on_success'),
            'smtp_server': self.get('smtp_server'),
            'smtp_port': smtp_port,
            'smtp_username': self.get('smtp_username'),
            'smtp_password': self.get('smtp_password'),
            'smtp_tls': True,
            'email_from': self.get('notify_email_from') or self.get('smtp_username'),
            'email_to': [address.strip() for address in email_to.split(',')] if email_to else [],
        }

        settings = SyncSettings(
            group_prefix=group_prefix,
            source=source,
            destination=destination,
            create_missing_groups=create_missing_groups,
            allow_empty_groups=allow_empty_groups,
            remove_members=self.get_flag('remove_members'),
            create_members=not self.get_flag('skip_add_members'),
            preview=self.get_flag('preview'),
            threads=threads,
            logging_config={
                'level': str(self.get('log_level')).upper(),
                'log_dir': self.get('log_dir'),
                'retention_days': retention_days,
            },
            notifications=notifications,
        )
        logger.debug("Configuration loaded successfully")
        return settings

    def _graph_side(self, name: str, prefix: str, user_field: str, required, errors: List[str]) -> SideSettings:
        tenant_id = required(f'{prefix}_tenant_id')
        client_id = required(f'{prefix}_client_id')
        certificate = self.get(f'{prefix}_client_certificate')
        secret = None
        if not certificate:
            secret = self.get(f'{prefix}_client_secret')
            if not secret:
                errors.append(
                    f"Missing required parameter: {OPTIONS_BY_NAME[f'{prefix}_client_secret'].cli_flag} "
                    f"(or {OPTIONS_BY_NAME[f'{prefix}_client_certificate'].cli_flag})"
                )
        return SideSettings(
            name,
            tenant_id=tenant_id,
            client_id=client_id,
            client_secret=secret,
            certificate=certificate,
            certificate_password=self.get(f'{prefix}_client_certificate_password') if certificate else None,
            user_field_name=user_field,
        )

    def _positive_int(self, name: str, errors: List[str]) -> int:
        value = self.get(name)
        try:
            number = int(value)
        except (TypeError, ValueError):
            errors.append(f"Parameter '{OPTIONS_BY_NAME[name].cli_flag}' must be a number, got '{value}'")
            return OPTIONS_BY_NAME[name].default
        if number < 1:
            errors.append(f"Parameter '{OPTIONS_BY_NAME[name].cli_flag}' must be at least 1, got {number}")
            return OPTIONS_BY_NAME[name].default
        return number


def load_settings(argv: Optional[Sequence[str]] = None,
                  environ: Optional[Mapping[str, str]] = None) -> SyncSettings:
    """
    Convenience function to parse the command line and load settings.

    Args:
        argv: Command line arguments (without the program name)
        environ: Environment mapping, defaults to os.environ

    Returns:
        Validated SyncSettings
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    values = {name: value for name, value in vars(args).items() if name != 'config'}
    return ConfigLoader(values, environ=environ, config_path=args.config).load()
