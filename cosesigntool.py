#!/usr/bin/env python3
"""
cosesigntool.py - Sign files with COSE_Sign1 signatures, and validate them.

Commands:
- sign      Sign a file or piped payload with a detached or embedded signature
- validate  Validate a signature against its payload and a set of trusted roots
- get       Validate an embedded signature and write out the payload it carries

Options use single-dash names with short aliases, e.g.
  cosesigntool sign -p doc.txt -pfx signer.pfx -ep

Every outcome maps to an ExitCode. The numeric values are a contract with
calling scripts and must never be renumbered.
"""

from __future__ import annotations

import argparse
import sys
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from types import MappingProxyType
from typing import IO, Any, Callable, Dict, Iterator, Mapping, Optional, Sequence, Tuple, Type, Union

try:
    from cryptography.exceptions import InvalidKey, UnsupportedAlgorithm
except ImportError as e:
    raise SystemExit(
        "Missing dependency 'cryptography'. Install with: python3 -m pip install -e ."
    ) from e

import cosehandler
from cosehandler import (
    DEFAULT_CONTENT_TYPE,
    CoseCertificateError,
    CoseSignatureError,
    DirectoryCertificateStore,
    SigningCertificate,
    Sign1Message,
    StoreLocation,
)


# ---------------------------
# Exit codes and failure reporting
# ---------------------------

class ExitCode(IntEnum):
    Success = 0
    HelpRequested = 1
    MissingRequiredOption = 2
    UnknownArgument = 3
    InvalidArgumentValue = 4
    MissingArgumentValue = 5
    UserSpecifiedFileNotFound = 6
    CertificateLoadFailure = 7
    PayloadReadError = 8
    SignatureLoadError = 9
    StoreCertificateNotFound = 10
    PayloadMismatch = 11
    CertificateChainValidationFailure = 12
    SignatureValidationFailure = 13


@dataclass(frozen=True)
class Failure:
    """A classified failure: the exit code to return and the line to show the user."""

    code: ExitCode
    message: str


def fail(
    code: ExitCode,
    exc: Optional[BaseException] = None,
    message: Optional[str] = None,
    stream: Optional[IO[str]] = None,
) -> ExitCode:
    """
    Write one diagnostic line to stderr and hand the exit code back, so callers
    can `return fail(...)`.
    """
    if message is None:
        message = str(exc) if exc is not None else code.name
    print(f"[{code.name}] {message}", file=stream or sys.stderr)
    return code


def report(failure: Failure, stream: Optional[IO[str]] = None) -> ExitCode:
    return fail(failure.code, message=failure.message, stream=stream)


# ---------------------------
# Options
# ---------------------------

class OptionError(ValueError):
    def __init__(self, code: ExitCode, message: str):
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class OptionSpec:
    name: str
    kind: str = "str"
    default: Optional[str] = None
    required: bool = False


TRUE_STRINGS = frozenset({"true", "1", "yes", "on"})
FALSE_STRINGS = frozenset({"false", "0", "no", "off"})

_ABSENT = object()
_NO_VALUE = object()


def build_alias_table(*tables: Mapping[str, str]) -> Mapping[str, str]:
    """
    Merge alias tables (spelling -> canonical option name) into one read-only mapping.
    Spellings are matched case-insensitively, so keys are stored lowercased. A
    spelling that later tables map to a different canonical name is rejected,
    including one that differs only in case.
    """
    merged: Dict[str, str] = {}
    for table in tables:
        for alias, canonical in table.items():
            if not alias.startswith("-"):
                raise ValueError(f"Option alias must start with '-': {alias}")
            alias = alias.lower()
            existing = merged.get(alias)
            if existing is not None and existing != canonical:
                raise ValueError(f"Option alias {alias} maps to both {existing} and {canonical}")
            merged[alias] = canonical
    return MappingProxyType(merged)


def aliases_for(alias_table: Mapping[str, str], canonical: str) -> Tuple[str, ...]:
    return tuple(a for a, c in alias_table.items() if c == canonical)


class _OptionParser(argparse.ArgumentParser):
    def error(self, message: str):
        raise OptionError(ExitCode.InvalidArgumentValue, message)


def _fold_option_case(token: str, alias_table: Mapping[str, str]) -> str:
    head, sep, tail = token.partition("=")
    if head.lower() in alias_table:
        return head.lower() + sep + tail
    return token


def load_command_line(
    args: Sequence[str],
    alias_table: Mapping[str, str],
    specs: Sequence[OptionSpec],
) -> Dict[str, Optional[str]]:
    """
    Tokenize command-line arguments into {canonical name: raw value}.
    Option spellings are matched case-insensitively. Only options present on
    the command line appear in the result; a boolean given without a value
    maps to None.
    """
    kinds = {s.name: s.kind for s in specs}
    parser = _OptionParser(add_help=False, allow_abbrev=False)
    for canonical in dict.fromkeys(alias_table.values()):
        parser.add_argument(
            *aliases_for(alias_table, canonical),
            dest=canonical,
            nargs="?",
            const=_NO_VALUE,
            default=_ABSENT,
        )

    ns, extras = parser.parse_known_args([_fold_option_case(a, alias_table) for a in args])
    if extras:
        raise OptionError(ExitCode.UnknownArgument, f"Unknown argument: {extras[0]}")

    raw: Dict[str, Optional[str]] = {}
    for name, value in vars(ns).items():
        if value is _ABSENT:
            continue
        if value is _NO_VALUE:
            if kinds.get(name) != "bool":
                raise OptionError(ExitCode.MissingArgumentValue, f"Option {name} requires a value")
            value = None
        raw[name] = value
    return raw


def parse_bool(name: str, value: Optional[str]) -> bool:
    if value is None:
        return True
    lowered = value.strip().lower()
    if lowered in TRUE_STRINGS:
        return True
    if lowered in FALSE_STRINGS:
        return False
    raise OptionError(ExitCode.InvalidArgumentValue, f"Option {name} expects true or false, got '{value}'")


def resolve_options(specs: Sequence[OptionSpec], raw: Mapping[str, Optional[str]]) -> Dict[str, Any]:
    """
    Produce one value per declared option: the explicit value, else the
    declared default, else None (False for booleans).
    """
    values: Dict[str, Any] = {}
    for spec in specs:
        if spec.name in raw:
            value: Any = raw[spec.name]
        else:
            value = spec.default
        if spec.kind == "bool":
            values[spec.name] = parse_bool(spec.name, value) if spec.name in raw else bool(value)
            continue
        if value is None and spec.required:
            raise OptionError(ExitCode.MissingRequiredOption, f"Missing required option: {spec.name}")
        values[spec.name] = value
    return values


BASE_OPTIONS = build_alias_table({
    "-PayloadFile": "PayloadFile",
    "-payload": "PayloadFile",
    "-p": "PayloadFile",
    "-SignatureFile": "SignatureFile",
    "-sig": "SignatureFile",
    "-sf": "SignatureFile",
})

BASE_SPECS: Tuple[OptionSpec, ...] = (
    OptionSpec("PayloadFile"),
    OptionSpec("SignatureFile"),
)


# ---------------------------
# Payload channel
# ---------------------------

class StandardStream(Enum):
    STDIN = "stdin"
    STDOUT = "stdout"


STDIN = StandardStream.STDIN
STDOUT = StandardStream.STDOUT

PayloadLocator = Union[Path, StandardStream]


class PayloadError(OSError):
    """The payload could not be opened or read."""


class PayloadChannel:
    """
    Reads payload bytes from a file or standard input, and writes result bytes
    to a file or standard output. Standard streams default to the process's
    binary streams and are never closed here.
    """

    def __init__(self, stdin: Optional[IO[bytes]] = None, stdout: Optional[IO[bytes]] = None):
        self._stdin = stdin
        self._stdout = stdout

    @property
    def stdin(self) -> IO[bytes]:
        if self._stdin is not None:
            return self._stdin
        return getattr(sys.stdin, "buffer", sys.stdin)

    @property
    def stdout(self) -> IO[bytes]:
        if self._stdout is not None:
            return self._stdout
        return getattr(sys.stdout, "buffer", sys.stdout)

    def has_piped_input(self) -> bool:
        try:
            return not self.stdin.isatty()
        except (AttributeError, ValueError):
            return False

    @contextmanager
    def open_input(self, locator: PayloadLocator) -> Iterator[IO[bytes]]:
        if locator is STDIN:
            yield self.stdin
            return
        path = Path(locator)
        if not path.is_file():
            raise PayloadError(f"Could not find the payload file {path}")
        try:
            stream = path.open("rb")
        except OSError as e:
            raise PayloadError(f"Could not open the payload file {path}: {e}") from e
        with stream:
            yield stream

    def read_payload(self, locator: PayloadLocator) -> Union[bytes, Failure]:
        """
        Read the whole payload into memory. Very large piped payloads are
        held in memory in full.
        """
        try:
            with self.open_input(locator) as stream:
                return stream.read()
        except PayloadError as e:
            return Failure(ExitCode.PayloadReadError, str(e))
        except OSError as e:
            return Failure(ExitCode.PayloadReadError, f"Could not read the payload: {e}")

    def write(self, locator: PayloadLocator, data: bytes) -> None:
        """Write all bytes to standard output, or overwrite the file at locator."""
        if locator is STDOUT:
            self.stdout.write(data)
            self.stdout.flush()
            return
        Path(locator).write_bytes(data)


def derive_signature_path(payload: PayloadLocator, embed: bool) -> Optional[Path]:
    """
    The default signature path for a payload: <payload>.csm when embedding,
    <payload>.cose for detached signatures, None when the payload was piped in.
    """
    if payload is STDIN:
        return None
    path = Path(payload)
    return path.with_name(path.name + (".csm" if embed else ".cose"))


# ---------------------------
# Certificate resolution
# ---------------------------

DEFAULT_STORE_NAME = "My"
DEFAULT_STORE_LOCATION = StoreLocation.CURRENT_USER.value


@dataclass(frozen=True)
class PfxSource:
    path: Path
    password: Optional[str] = None


@dataclass(frozen=True)
class StoreSource:
    thumbprint: str
    store_name: str = DEFAULT_STORE_NAME
    store_location: StoreLocation = StoreLocation.CURRENT_USER


CertificateSource = Union[PfxSource, StoreSource]


def resolve_certificate(
    source: Optional[CertificateSource],
    store: Optional[DirectoryCertificateStore] = None,
) -> Union[SigningCertificate, Failure]:
    """
    Acquire the signing certificate from a PFX file or a certificate store.
    No retries: every failure is final for the run.
    """
    if source is None:
        return Failure(
            ExitCode.MissingRequiredOption,
            "You must specify a certificate file (-PfxCertificate) or thumbprint (-Thumbprint) to sign with.",
        )

    if isinstance(source, PfxSource):
        if not source.path.is_file():
            return Failure(ExitCode.CertificateLoadFailure, f"Could not find the certificate file {source.path}")
        try:
            return cosehandler.load_pfx(source.path, source.password)
        except (CoseCertificateError, OSError) as e:
            return Failure(ExitCode.CertificateLoadFailure, str(e))

    if store is None:
        store = DirectoryCertificateStore()
    try:
        cert = store.find_by_thumbprint(source.thumbprint, source.store_name, source.store_location)
    except (CoseCertificateError, OSError) as e:
        return Failure(ExitCode.CertificateLoadFailure, str(e))
    if cert is None:
        message = (
            f"Could not find a certificate with thumbprint {source.thumbprint} "
            f"in store {source.store_name} ({source.store_location.value})"
        )
        try:
            skipped = store.unreadable_entries(source.store_name, source.store_location)
        except OSError:
            skipped = []
        if skipped:
            names = ", ".join(p.name for p in skipped)
            message += f". Skipped store entries that could not be read (check -Password): {names}"
        return Failure(ExitCode.StoreCertificateNotFound, message)
    return cert


# ---------------------------
# Commands
# ---------------------------

class Command(ABC):
    """
    A CLI command: owns its option table, turns resolved option values into a
    frozen options object, and runs to an ExitCode.
    """

    name = ""
    options_table: Mapping[str, str] = BASE_OPTIONS
    option_specs: Tuple[OptionSpec, ...] = BASE_SPECS
    usage = ""

    def __init__(self, options: Any, channel: Optional[PayloadChannel] = None):
        self.options = options
        self.channel = channel or PayloadChannel()

    @classmethod
    def from_args(cls, args: Sequence[str], **kwargs: Any) -> "Command":
        raw = load_command_line(args, cls.options_table, cls.option_specs)
        values = resolve_options(cls.option_specs, raw)
        return cls(cls.parse_options(values), **kwargs)

    @classmethod
    @abstractmethod
    def parse_options(cls, values: Mapping[str, Any]) -> Any:
        ...

    @abstractmethod
    def run(self) -> ExitCode:
        ...

    def payload_locator(self, payload_file: Optional[Path]) -> Union[PayloadLocator, Failure]:
        if payload_file is not None:
            return payload_file
        if self.channel.has_piped_input():
            return STDIN
        return Failure(
            ExitCode.MissingRequiredOption,
            "You must specify a payload file (-PayloadFile) or pipe the payload in.",
        )


def _optional_path(value: Optional[str]) -> Optional[Path]:
    return Path(value) if value else None


@dataclass(frozen=True)
class SignOptions:
    payload: Optional[Path] = None
    signature: Optional[Path] = None
    pipe_output: bool = False
    embed_payload: bool = False
    certificate: Optional[CertificateSource] = None
    content_type: str = DEFAULT_CONTENT_TYPE
    password: Optional[str] = None
    ignored_thumbprint: Optional[str] = None


SignSigner = Callable[..., bytes]


class SignCommand(Command):
    name = "sign"
    options_table = build_alias_table(BASE_OPTIONS, {
        "-EmbedPayload": "EmbedPayload",
        "-ep": "EmbedPayload",
        "-PipeOutput": "PipeOutput",
        "-po": "PipeOutput",
        "-PfxCertificate": "PfxCertificate",
        "-pfx": "PfxCertificate",
        "-Password": "Password",
        "-pw": "Password",
        "-Thumbprint": "Thumbprint",
        "-th": "Thumbprint",
        "-StoreName": "StoreName",
        "-sn": "StoreName",
        "-StoreLocation": "StoreLocation",
        "-sl": "StoreLocation",
        "-ContentType": "ContentType",
        "-cty": "ContentType",
    })
    option_specs = BASE_SPECS + (
        OptionSpec("EmbedPayload", kind="bool"),
        OptionSpec("PipeOutput", kind="bool"),
        OptionSpec("PfxCertificate"),
        OptionSpec("Password"),
        OptionSpec("Thumbprint"),
        OptionSpec("StoreName", default=DEFAULT_STORE_NAME, required=True),
        OptionSpec("StoreLocation", default=DEFAULT_STORE_LOCATION, required=True),
        OptionSpec("ContentType", default=DEFAULT_CONTENT_TYPE, required=True),
    )

    def __init__(
        self,
        options: SignOptions,
        channel: Optional[PayloadChannel] = None,
        store: Optional[DirectoryCertificateStore] = None,
        signer: Optional[SignSigner] = None,
    ):
        super().__init__(options, channel)
        self.store = store
        self.signer = signer or cosehandler.sign

    @classmethod
    def parse_options(cls, values: Mapping[str, Any]) -> SignOptions:
        try:
            location = StoreLocation.parse(values["StoreLocation"])
        except ValueError as e:
            raise OptionError(ExitCode.InvalidArgumentValue, str(e)) from e

        pfx = values["PfxCertificate"]
        thumbprint = values["Thumbprint"]
        certificate: Optional[CertificateSource] = None
        if pfx:
            certificate = PfxSource(Path(pfx), values["Password"])
        elif thumbprint:
            certificate = StoreSource(thumbprint, values["StoreName"], location)

        return SignOptions(
            payload=_optional_path(values["PayloadFile"]),
            signature=_optional_path(values["SignatureFile"]),
            pipe_output=values["PipeOutput"],
            embed_payload=values["EmbedPayload"],
            certificate=certificate,
            content_type=values["ContentType"],
            password=values["Password"],
            ignored_thumbprint=thumbprint if pfx and thumbprint else None,
        )

    def output_locator(self, payload: PayloadLocator) -> Optional[PayloadLocator]:
        if self.options.pipe_output:
            return STDOUT
        if self.options.signature is not None:
            return self.options.signature
        return derive_signature_path(payload, self.options.embed_payload)

    def invoke_signer(self, payload: bytes, cert: SigningCertificate) -> Union[bytes, Failure]:
        try:
            return self.signer(
                payload,
                cert,
                embed=self.options.embed_payload,
                content_type=self.options.content_type,
            )
        except ValueError as e:
            # Empty or oversized payload.
            return Failure(ExitCode.PayloadReadError, str(e))
        except (CoseCertificateError, UnsupportedAlgorithm, InvalidKey) as e:
            return Failure(ExitCode.CertificateLoadFailure, str(e))

    def run(self) -> ExitCode:
        opts = self.options

        locator = self.payload_locator(opts.payload)
        if isinstance(locator, Failure):
            return report(locator)
        payload = self.channel.read_payload(locator)
        if isinstance(payload, Failure):
            return report(payload)

        if opts.ignored_thumbprint:
            print(
                f"[NOTE] Both -PfxCertificate and -Thumbprint were given; "
                f"signing with {opts.certificate.path} and ignoring thumbprint {opts.ignored_thumbprint}",
                file=sys.stderr,
            )
        store = self.store or DirectoryCertificateStore(password=opts.password)
        cert = resolve_certificate(opts.certificate, store)
        if isinstance(cert, Failure):
            return report(cert)

        output = self.output_locator(locator)
        if output is None:
            return fail(
                ExitCode.MissingRequiredOption,
                message="Could not determine a path to write the signature file to; use -SignatureFile or -PipeOutput.",
            )

        signed = self.invoke_signer(payload, cert)
        if isinstance(signed, Failure):
            return report(signed)

        self.channel.write(output, signed)
        return ExitCode.Success

    usage = """
Sign command: Signs the specified file or piped content with a detached or embedded signature.
    A detached signature is written to its own file and matches the payload by hash.
    An embedded signature carries a copy of the payload. Payloads over 2 GiB cannot be embedded.

Options:
    PayloadFile / payload / p: Required, pipeable. The file or piped content to sign.

    SignatureFile / sig / sf: Optional. Where to write the COSE signature.
        Defaults to [payload file].cose for detached signatures or [payload file].csm for embedded ones.
        Required when the payload is piped in and PipeOutput is not set.

    PipeOutput / po: Optional. Write the signature to standard output instead of to a file.

    PfxCertificate / pfx: Path to a private key certificate file (.pfx) to sign with.
    Password / pw: Optional. Password for the .pfx file.
    --OR--
    Thumbprint / th: SHA1 thumbprint of a certificate in the certificate store to sign with.

    StoreName / sn: Optional. Certificate store to search for the thumbprint. Default is 'My'.

    StoreLocation / sl: Optional. CurrentUser or LocalMachine. Default is 'CurrentUser'.

    EmbedPayload / ep: Optional. Embed a copy of the payload in the signature. Default is detached.
        Embedded payloads can be read back with the 'get' command.

    ContentType / cty: Optional. MIME type for the content type header. Default is 'application/cose'.
"""


@dataclass(frozen=True)
class ValidateOptions:
    payload: Optional[Path] = None
    signature: Optional[Path] = None
    roots: Tuple[Path, ...] = field(default_factory=tuple)
    allow_untrusted: bool = False


class ValidateCommand(Command):
    name = "validate"
    options_table = build_alias_table(BASE_OPTIONS, {
        "-Roots": "Roots",
        "-rt": "Roots",
        "-AllowUntrusted": "AllowUntrusted",
        "-au": "AllowUntrusted",
    })
    option_specs = BASE_SPECS + (
        OptionSpec("Roots"),
        OptionSpec("AllowUntrusted", kind="bool"),
    )

    @classmethod
    def parse_options(cls, values: Mapping[str, Any]) -> ValidateOptions:
        return ValidateOptions(**cls._validate_fields(values))

    @staticmethod
    def _validate_fields(values: Mapping[str, Any]) -> Dict[str, Any]:
        roots = values["Roots"] or ""
        return {
            "payload": _optional_path(values["PayloadFile"]),
            "signature": _optional_path(values["SignatureFile"]),
            "roots": tuple(Path(r.strip()) for r in roots.split(",") if r.strip()),
            "allow_untrusted": values["AllowUntrusted"],
        }

    def load_signature(self) -> Union[Sign1Message, Failure]:
        path = self.options.signature
        if path is None:
            if not self.channel.has_piped_input():
                return Failure(
                    ExitCode.MissingRequiredOption,
                    "You must specify a signature file (-SignatureFile) or pipe the signature in.",
                )
            data = self.channel.stdin.read()
        elif not path.is_file():
            return Failure(ExitCode.UserSpecifiedFileNotFound, f"Could not find the signature file {path}")
        else:
            try:
                data = path.read_bytes()
            except OSError as e:
                return Failure(ExitCode.SignatureLoadError, f"Could not read the signature file {path}: {e}")
        try:
            return cosehandler.decode_sign1(data)
        except CoseSignatureError as e:
            return Failure(ExitCode.SignatureLoadError, str(e))

    def load_roots(self) -> Union[list, Failure]:
        roots = []
        for path in self.options.roots:
            if not path.is_file():
                return Failure(ExitCode.UserSpecifiedFileNotFound, f"Could not find the root certificate file {path}")
            try:
                roots.extend(cosehandler.load_certificates(path))
            except CoseCertificateError as e:
                return Failure(ExitCode.CertificateLoadFailure, str(e))
        return roots

    def validate(self, message: Sign1Message) -> Optional[Failure]:
        payload: Optional[bytes] = None
        if self.options.payload is not None:
            read = self.channel.read_payload(self.options.payload)
            if isinstance(read, Failure):
                return read
            payload = read

        if message.is_detached and payload is None:
            return Failure(
                ExitCode.MissingRequiredOption,
                "The signature is detached; supply the signed payload with -PayloadFile.",
            )
        if not message.is_detached and payload is not None and payload != message.payload:
            return Failure(ExitCode.PayloadMismatch, "The embedded payload does not match the supplied payload.")

        try:
            cosehandler.verify_signature(message, payload)
        except CoseSignatureError as e:
            return Failure(ExitCode.SignatureValidationFailure, str(e))

        if self.options.allow_untrusted:
            return None
        roots = self.load_roots()
        if isinstance(roots, Failure):
            return roots
        try:
            cosehandler.check_chain(message, roots)
        except CoseCertificateError as e:
            return Failure(ExitCode.CertificateChainValidationFailure, str(e))
        return None

    def run(self) -> ExitCode:
        message = self.load_signature()
        if isinstance(message, Failure):
            return report(message)
        failure = self.validate(message)
        if failure is not None:
            return report(failure)
        return ExitCode.Success

    usage = """
Validate command: Validates a COSE signature and its certificate chain.

Options:
    SignatureFile / sig / sf: Required, pipeable. The COSE signature file to validate.

    PayloadFile / payload / p: The signed payload. Required for detached signatures; for embedded
        signatures it is compared to the embedded copy.

    Roots / rt: Comma-separated list of root certificate files (PEM or DER) the signing chain must end in.

    AllowUntrusted / au: Optional. Skip the certificate chain check.
"""


@dataclass(frozen=True)
class GetOptions(ValidateOptions):
    save_to: Optional[Path] = None


class GetCommand(ValidateCommand):
    name = "get"
    options_table = build_alias_table(ValidateCommand.options_table, {
        "-SaveTo": "SaveTo",
        "-sa": "SaveTo",
    })
    option_specs = ValidateCommand.option_specs + (OptionSpec("SaveTo"),)

    @classmethod
    def parse_options(cls, values: Mapping[str, Any]) -> GetOptions:
        return GetOptions(save_to=_optional_path(values["SaveTo"]), **cls._validate_fields(values))

    def run(self) -> ExitCode:
        message = self.load_signature()
        if isinstance(message, Failure):
            return report(message)
        if message.is_detached:
            return fail(
                ExitCode.PayloadReadError,
                message="The signature is detached; there is no embedded payload to extract.",
            )
        failure = self.validate(message)
        if failure is not None:
            return report(failure)
        self.channel.write(self.options.save_to or STDOUT, message.payload)
        return ExitCode.Success

    usage = """
Get command: Validates an embedded COSE signature and writes out the payload it carries.

Options:
    SignatureFile / sig / sf: Required, pipeable. The embedded COSE signature file.

    SaveTo / sa: Optional. File to write the payload to. Default is standard output.

    Roots / rt, AllowUntrusted / au: As for the validate command.
"""


# ---------------------------
# Entry point
# ---------------------------

COMMANDS: Dict[str, Type[Command]] = {
    SignCommand.name: SignCommand,
    ValidateCommand.name: ValidateCommand,
    GetCommand.name: GetCommand,
}

HELP_TOKENS = frozenset({"-?", "/?", "-h", "-help", "--help"})

GENERAL_USAGE = """
CoseSignTool: Signs files and validates COSE signatures.

Usage:
    cosesigntool <command> [options]

Commands:
    sign      Sign a file or piped content.
    validate  Validate a COSE signature.
    get       Validate an embedded COSE signature and read out its payload.

Run 'cosesigntool <command> -?' for the options of a command.
"""


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if not args or args[0].lower() == "help" or args[0].lower() in HELP_TOKENS:
        print(GENERAL_USAGE, file=sys.stderr)
        return int(ExitCode.HelpRequested)

    command_cls = COMMANDS.get(args[0].lower())
    if command_cls is None:
        print(GENERAL_USAGE, file=sys.stderr)
        return int(fail(ExitCode.UnknownArgument, message=f"Unknown command: {args[0]}"))

    if any(a.lower() in HELP_TOKENS for a in args[1:]):
        print(command_cls.usage, file=sys.stderr)
        return int(ExitCode.HelpRequested)

    try:
        command = command_cls.from_args(args[1:])
    except OptionError as e:
        print(command_cls.usage, file=sys.stderr)
        return int(fail(e.code, e))
    return int(command.run())


if __name__ == "__main__":
    raise SystemExit(main())
