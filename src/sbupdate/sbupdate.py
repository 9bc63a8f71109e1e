#!/usr/bin/env python3
# SPDX-License-Identifier: LGPL-2.1-or-later
#
# This file is part of sbupdate.
#
# sbupdate is free software; you can redistribute it and/or modify it
# under the terms of the GNU Lesser General Public License as published by
# the Free Software Foundation; either version 2.1 of the License, or
# (at your option) any later version.
#
# sbupdate is distributed in the hope that it will be useful, but
# WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the GNU
# General Public License for more details.
#
# You should have received a copy of the GNU Lesser General Public License
# along with sbupdate; If not, see <https://www.gnu.org/licenses/>.

# pylint: disable=import-outside-toplevel,consider-using-with,unused-argument
# pylint: disable=unnecessary-lambda-assignment

import argparse
import builtins
import configparser
import contextlib
import dataclasses
import enum
import fnmatch
import inspect
import os
import pprint
import re
import shlex
import shutil
import subprocess
import sys
import tempfile
import textwrap
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import (
    IO,
    Any,
    Callable,
    Optional,
    Union,
)

import pefile  # type: ignore

__version__ = '1.0'

PROG = 'sbupdate'

EFI_ARCH_MAP = {
    # host_arch glob : efi_arch
    'x86_64':    'x64',
    'i[3456]86': 'ia32',
}  # fmt: skip
EFI_ARCHES: list[str] = list(EFI_ARCH_MAP.values())

# Default configuration directories and file name.
# When the user does not specify one, the directories are searched in this order and the first file found is
# used.
DEFAULT_CONFIG_DIRS = ['/etc', '/usr/local/etc']
DEFAULT_CONFIG_FILE = 'sbupdate.conf'

# The stub expects the sections at these addresses. The gaps leave room for the sections to grow.
SECTION_ADDRESSES = {
    '.osrel':   0x20000,
    '.cmdline': 0x30000,
    '.splash':  0x40000,
    '.linux':   0x2000000,
    '.initrd':  0x3000000,
}  # fmt: skip

# Paths in the hook input are relative to the root directory.
HOOK_KERNEL_PATTERN = re.compile(r'^boot/vmlinuz-(?P<version>[^/]+)$')


class Style:
    bold = '\033[0;1;39m' if sys.stderr.isatty() else ''
    gray = '\033[0;38;5;245m' if sys.stderr.isatty() else ''
    red = '\033[31;1m' if sys.stderr.isatty() else ''
    reset = '\033[0m' if sys.stderr.isatty() else ''


def guess_efi_arch() -> str:
    arch = os.uname().machine

    for glob, efi_arch in EFI_ARCH_MAP.items():
        if fnmatch.fnmatch(arch, glob):
            return efi_arch

    raise ValueError(f'Unsupported architecture {arch}')


def shell_join(cmd: list[Union[str, Path]]) -> str:
    # TODO: drop in favour of shlex.join once shlex.join supports Path.
    return ' '.join(shlex.quote(str(x)) for x in cmd)


def round_up(x: int, blocksize: int = 4096) -> int:
    return (x + blocksize - 1) // blocksize * blocksize


def error(message: str) -> None:
    print(f'{Style.red}{PROG}: error: {message}{Style.reset}', file=sys.stderr)


@dataclasses.dataclass(frozen=True)
class SbupdateConfig:
    backup: bool
    boot_dir: Path
    cmdline: str
    cmdline_overrides: dict[str, str]
    efi_arch: str
    esp_dir: Path
    extra_sign: list[Path]
    hook: bool
    initrd_overrides: dict[str, Path]
    initrd_prepend: list[Path]
    key_dir: Path
    os_release: Path
    out_dir: Path
    sb_cert: Path
    sb_key: Path
    signing_engine: Optional[str]
    splash: Optional[Path]
    stub: Path
    summary: bool
    tools: list[Path] = dataclasses.field(default_factory=list)

    @classmethod
    def from_namespace(cls, ns: argparse.Namespace) -> 'SbupdateConfig':
        return cls(**{k: v for k, v in vars(ns).items() if k in inspect.signature(cls).parameters})

    @property
    def output_dir(self) -> Path:
        return self.esp_dir / self.out_dir

    def output_path(self, version: str) -> Path:
        return self.output_dir / f'{version}-signed.efi'


def find_tool(
    name: str,
    fallback: Optional[str] = None,
    opts: Optional[SbupdateConfig] = None,
    msg: str = 'Tool {name} not installed!',
) -> Union[str, Path]:
    if opts and opts.tools:
        for d in opts.tools:
            tool = d / name
            if tool.exists():
                return tool

    if shutil.which(name) is not None:
        return name

    if fallback is None:
        raise ValueError(msg.format(name=name))

    return fallback


# Change set resolution


@dataclasses.dataclass(frozen=True)
class KernelChanged:
    version: str


@dataclasses.dataclass(frozen=True)
class KernelRemoved:
    version: str


@dataclasses.dataclass(frozen=True)
class OtherDependency:
    path: str


HookEvent = Union[KernelChanged, KernelRemoved, OtherDependency]


@dataclasses.dataclass(frozen=True)
class ChangeSet:
    to_build: tuple[str, ...] = ()
    to_remove: tuple[str, ...] = ()


def installed_kernels(boot_dir: Path) -> set[str]:
    return {p.name.removeprefix('vmlinuz-') for p in boot_dir.glob('vmlinuz-*')}


def read_hook_input(f: IO[str]) -> Iterator[str]:
    """Yield one changed path per line until the stream is closed."""
    for line in f:
        yield line.rstrip('\n')


def classify(line: str, installed: Iterable[str]) -> HookEvent:
    """Map one line of hook input to the kind of change it describes.

    A kernel image path yields KernelChanged or KernelRemoved, depending on
    whether the kernel is still installed. Everything else, including lines
    that do not look like paths at all, is reported as OtherDependency.
    """
    if m := HOOK_KERNEL_PATTERN.match(line):
        version = m.group('version')
        if version in installed:
            return KernelChanged(version)
        return KernelRemoved(version)
    return OtherDependency(line)


def resolve(hook: bool, changed_paths: Iterable[str], installed: Iterable[str]) -> ChangeSet:
    installed = set(installed)

    if not hook:
        return ChangeSet(to_build=tuple(sorted(installed)))

    to_build: set[str] = set()
    to_remove: set[str] = set()
    force_all = False

    for line in changed_paths:
        event = classify(line, installed)
        if isinstance(event, KernelChanged):
            to_build.add(event.version)
        elif isinstance(event, KernelRemoved):
            to_remove.add(event.version)
        else:
            # Not specific to one kernel (e.g. microcode), so every image may be affected.
            force_all = True

    if force_all:
        to_build = installed

    return ChangeSet(to_build=tuple(sorted(to_build)), to_remove=tuple(sorted(to_remove)))


# Image assembly


class PEError(Exception):
    pass


@dataclasses.dataclass(frozen=True)
class AssemblyInput:
    linux: Path
    cmdline: str
    initrd: Path
    prepend: list[Path] = dataclasses.field(default_factory=list)


@dataclasses.dataclass(frozen=True)
class Scratch:
    initrd: Path
    cmdline: Path


@dataclasses.dataclass
class Section:
    name: str
    content: Path
    virtual_address: int

    @classmethod
    def create(cls, name: str, content: Path) -> 'Section':
        return cls(name, content, SECTION_ADDRESSES[name])


@dataclasses.dataclass
class Image:
    executable: Path
    sections: list[Section] = dataclasses.field(default_factory=list, init=False)

    def add_section(self, section: Section) -> None:
        if any(section.name == s.name for s in self.sections):
            raise ValueError(f'Duplicate section {section.name}')

        self.sections += [section]


def assembly_input(opts: SbupdateConfig, version: str) -> AssemblyInput:
    return AssemblyInput(
        linux=opts.boot_dir / f'vmlinuz-{version}',
        cmdline=opts.cmdline_overrides.get(version, opts.cmdline),
        initrd=opts.initrd_overrides.get(version, opts.boot_dir / f'initramfs-{version}.img'),
        prepend=[p for p in opts.initrd_prepend if p.exists()],
    )


def join_initrd(prepend: list[Path], initrd: Path, output: Path) -> Path:
    """Concatenate the prepend images and the initrd into output.

    The kernel walks concatenated cpio archives in order, so the prepend images
    (microcode) must come first. Without prepend images the initrd is used as is.
    """
    if not prepend:
        return initrd

    with output.open('wb') as out:
        for file in [*prepend, initrd]:
            with file.open('rb') as f:
                shutil.copyfileobj(f, out)

    return output


def write_cmdline(cmdline: str, output: Path) -> Path:
    # No trailing newline, the kernel would take it as part of the last argument.
    output.write_text(cmdline)
    return output


def pe_strip_section_name(name: bytes) -> str:
    return name.rstrip(b'\x00').decode()


def pe_add_sections(image: Image, output: Union[str, Path]) -> None:
    pe = pefile.PE(image.executable, fast_load=True)

    # Old stubs do not have the symbol/string table stripped, even though image files should not have one.
    if symbol_table := pe.FILE_HEADER.PointerToSymbolTable:
        symbol_table_size = 18 * pe.FILE_HEADER.NumberOfSymbols
        if string_table_size := pe.get_dword_from_offset(symbol_table + symbol_table_size):
            symbol_table_size += string_table_size

        # Let's be safe and only strip it if it's at the end of the file.
        if symbol_table + symbol_table_size == len(pe.__data__):
            pe.__data__ = pe.__data__[:symbol_table]
            pe.FILE_HEADER.PointerToSymbolTable = 0
            pe.FILE_HEADER.NumberOfSymbols = 0
            pe.FILE_HEADER.IMAGE_FILE_LOCAL_SYMS_STRIPPED = True

    # Old stubs might have been stripped, leading to unaligned raw data values, so let's fix them up here.
    # pylint: disable=no-member

    for i, section in enumerate(pe.sections):
        oldp = section.PointerToRawData
        oldsz = section.SizeOfRawData
        section.PointerToRawData = round_up(oldp, pe.OPTIONAL_HEADER.FileAlignment)
        section.SizeOfRawData = round_up(oldsz, pe.OPTIONAL_HEADER.FileAlignment)
        padp = section.PointerToRawData - oldp
        padsz = section.SizeOfRawData - oldsz

        for later_section in pe.sections[i + 1 :]:
            later_section.PointerToRawData += padp + padsz

        pe.__data__ = (
            pe.__data__[:oldp]
            + bytes(padp)
            + pe.__data__[oldp : oldp + oldsz]
            + bytes(padsz)
            + pe.__data__[oldp + oldsz :]
        )

    # Make room for the new section headers by padding SizeOfHeaders to a multiple of the file alignment.
    # The first section's data starts at a multiple of the file alignment, so all space before it is unused.
    pe.OPTIONAL_HEADER.SizeOfHeaders = round_up(
        pe.OPTIONAL_HEADER.SizeOfHeaders, pe.OPTIONAL_HEADER.FileAlignment
    )
    pe = pefile.PE(data=pe.write(), fast_load=True)

    warnings = pe.get_warnings()
    if warnings:
        raise PEError(f'pefile warnings treated as errors: {warnings}')

    security = pe.OPTIONAL_HEADER.DATA_DIRECTORY[pefile.DIRECTORY_ENTRY['IMAGE_DIRECTORY_ENTRY_SECURITY']]
    if security.VirtualAddress != 0:
        raise PEError('Stub image is signed, refusing.')

    existing = {pe_strip_section_name(s.Name) for s in pe.sections}

    for section in sorted(image.sections, key=lambda s: s.virtual_address):
        if section.name in existing:
            raise PEError(f'Stub already contains a {section.name} section.')

        new_section = pefile.SectionStructure(pe.__IMAGE_SECTION_HEADER_format__, pe=pe)
        new_section.__unpack__(b'\0' * new_section.sizeof())

        offset = pe.sections[-1].get_file_offset() + new_section.sizeof()
        if offset + new_section.sizeof() > pe.OPTIONAL_HEADER.SizeOfHeaders:
            raise PEError(f'Not enough header space to add section {section.name}.')

        if section.virtual_address % pe.OPTIONAL_HEADER.SectionAlignment:
            raise PEError(f'Address 0x{section.virtual_address:x} of section {section.name} is not aligned.')

        previous_end = round_up(
            pe.sections[-1].VirtualAddress + pe.sections[-1].Misc_VirtualSize,
            pe.OPTIONAL_HEADER.SectionAlignment,
        )
        if section.virtual_address < previous_end:
            raise PEError(
                f'Section {section.name} at 0x{section.virtual_address:x} overlaps '
                f'{pe_strip_section_name(pe.sections[-1].Name)} which ends at 0x{previous_end:x}.'
            )

        data = section.content.read_bytes()

        new_section.set_file_offset(offset)
        new_section.Name = section.name.encode()
        new_section.Misc_VirtualSize = len(data)
        # Non-stripped stubs might still have an unaligned symbol table at the end, making their size
        # unaligned, so we make sure to explicitly pad the pointer to new sections to an aligned offset.
        new_section.PointerToRawData = round_up(len(pe.__data__), pe.OPTIONAL_HEADER.FileAlignment)
        new_section.SizeOfRawData = round_up(len(data), pe.OPTIONAL_HEADER.FileAlignment)
        new_section.VirtualAddress = section.virtual_address

        new_section.IMAGE_SCN_MEM_READ = True
        if section.name == '.linux':
            # Old kernels that use EFI handover protocol will be executed inline.
            new_section.IMAGE_SCN_CNT_CODE = True
        else:
            new_section.IMAGE_SCN_CNT_INITIALIZED_DATA = True

        pe.__data__ = (
            pe.__data__[:]
            + bytes(new_section.PointerToRawData - len(pe.__data__))
            + data
            + bytes(new_section.SizeOfRawData - len(data))
        )

        pe.FILE_HEADER.NumberOfSections += 1
        pe.OPTIONAL_HEADER.SizeOfInitializedData += new_section.Misc_VirtualSize
        pe.__structures__.append(new_section)
        pe.sections.append(new_section)

    pe.OPTIONAL_HEADER.CheckSum = 0
    pe.OPTIONAL_HEADER.SizeOfImage = round_up(
        pe.sections[-1].VirtualAddress + pe.sections[-1].Misc_VirtualSize,
        pe.OPTIONAL_HEADER.SectionAlignment,
    )

    pe.write(os.fspath(output))


def make_image(
    version: str,
    inp: AssemblyInput,
    stub: Path,
    splash: Optional[Path],
    os_release: Path,
    output: Path,
    scratch: Scratch,
) -> None:
    image = Image(stub)

    sections = [
        # name,      content
        ('.osrel',   os_release),
        ('.cmdline', write_cmdline(inp.cmdline, scratch.cmdline)),
        ('.splash',  splash),
        ('.linux',   inp.linux),
        ('.initrd',  join_initrd(inp.prepend, inp.initrd, scratch.initrd)),
    ]  # fmt: skip

    for name, content in sections:
        if content:
            image.add_section(Section.create(name, content))

    pe_add_sections(image, output)


# Signing


class SignStatus(enum.Enum):
    SIGNED = 'signed'
    ALREADY_SIGNED = 'already signed'


class SbSign:
    @staticmethod
    def sign(input_f: Union[str, Path], output_f: Union[str, Path], opts: SbupdateConfig) -> None:
        tool = find_tool('sbsign', opts=opts, msg='sbsign, required for signing, is not installed')
        cmd = [
            tool,
            '--key', opts.sb_key,
            '--cert', opts.sb_cert,
            *(['--engine', opts.signing_engine] if opts.signing_engine is not None else []),
            '--output', output_f,
            input_f,
        ]  # fmt: skip

        print('+', shell_join(cmd), file=sys.stderr)
        subprocess.check_call(cmd, stdout=subprocess.DEVNULL)

    @staticmethod
    def verify(path: Union[str, Path], opts: SbupdateConfig) -> bool:
        tool = find_tool('sbverify', opts=opts, msg='sbverify, required for verification, is not installed')
        cmd = [tool, '--cert', opts.sb_cert, path]

        print('+', shell_join(cmd), file=sys.stderr)
        # Any failure, including a signature made with a different key, means "not signed".
        return subprocess.run(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL).returncode == 0


def sign_in_place(path: Path, opts: SbupdateConfig) -> None:
    SbSign.sign(path, path, opts)


def sign_if_unsigned(
    path: Path,
    opts: SbupdateConfig,
    on_sign: Optional[Callable[[], None]] = None,
) -> SignStatus:
    if SbSign.verify(path, opts):
        return SignStatus.ALREADY_SIGNED

    if on_sign:
        on_sign()
    sign_in_place(path, opts)
    return SignStatus.SIGNED


# Pipeline


@dataclasses.dataclass(frozen=True)
class Result:
    name: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# Errors that only affect one kernel or one extra file
UNIT_ERRORS = (OSError, subprocess.CalledProcessError, ValueError, PEError, pefile.PEFormatError)


@contextlib.contextmanager
def scratch_files() -> Iterator[Scratch]:
    with tempfile.NamedTemporaryFile(prefix='sbupdate-initrd') as initrd:
        with tempfile.NamedTemporaryFile(prefix='sbupdate-cmdline') as cmdline:
            yield Scratch(initrd=Path(initrd.name), cmdline=Path(cmdline.name))


def backup_path(output: Path) -> Path:
    return output.with_name(output.name + '.bak')


def backup_image(output: Path) -> None:
    if output.exists():
        output.replace(backup_path(output))


def remove_image(opts: SbupdateConfig, version: str) -> None:
    print(f'Removing kernel image for {version}...')
    output = opts.output_path(version)
    output.unlink(missing_ok=True)
    backup_path(output).unlink(missing_ok=True)


def update_image(opts: SbupdateConfig, version: str, scratch: Scratch) -> None:
    print(f'Generating and signing kernel image for {version}...')
    output = opts.output_path(version)

    if opts.backup:
        backup_image(output)

    make_image(
        version,
        assembly_input(opts, version),
        stub=opts.stub,
        splash=opts.splash,
        os_release=opts.os_release,
        output=output,
        scratch=scratch,
    )
    sign_in_place(output, opts)


def sign_extra(opts: SbupdateConfig, path: Path) -> None:
    status = sign_if_unsigned(path, opts, on_sign=lambda: print(f'Signing {path}...'))
    if status == SignStatus.ALREADY_SIGNED:
        print(f'Skipping already signed file {path}')


def attempt(name: str, func: Callable[..., None], *args: Any) -> Result:
    try:
        func(*args)
    except UNIT_ERRORS as e:
        return Result(name, str(e) or type(e).__name__)
    return Result(name)


def run(opts: SbupdateConfig, changed_paths: Iterable[str] = ()) -> int:
    changes = resolve(opts.hook, changed_paths, installed_kernels(opts.boot_dir))

    try:
        opts.output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        error(f'cannot create {opts.output_dir}: {e}')
        return 1

    results = [attempt(version, remove_image, opts, version) for version in changes.to_remove]

    with scratch_files() as scratch:
        results += [attempt(version, update_image, opts, version, scratch) for version in changes.to_build]

    if not opts.hook:
        results += [attempt(os.fspath(path), sign_extra, opts, path) for path in opts.extra_sign]

    failed = [r for r in results if not r.ok]
    for r in failed:
        error(f'{r.name}: {r.error}')

    return 1 if failed else 0


# Configuration


def parse_kernel_override(s: str) -> tuple[str, str]:
    version, sep, value = s.partition('=')
    if not sep or not version:
        raise argparse.ArgumentTypeError(f'Cannot parse per-kernel setting (expected VERSION=VALUE): {s!r}')
    return version, value


@dataclasses.dataclass(frozen=True)
class ConfigItem:
    @staticmethod
    def config_list_prepend(
        namespace: argparse.Namespace,
        group: Optional[str],
        dest: str,
        value: Any,
    ) -> None:
        "Prepend value to namespace.<dest>"

        old = getattr(namespace, dest, [])
        if old is None:
            old = []
        setattr(namespace, dest, value + old)

    @staticmethod
    def config_set_if_unset(
        namespace: argparse.Namespace,
        group: Optional[str],
        dest: str,
        value: Any,
    ) -> None:
        "Set namespace.<dest> to value only if it was None"

        assert not group

        if getattr(namespace, dest) is None:
            setattr(namespace, dest, value)

    @staticmethod
    def parse_boolean(s: str) -> bool:
        "Parse 1/true/yes/y/t/on as true and 0/false/no/n/f/off/None as false"
        s_l = s.lower()
        if s_l in {'1', 'true', 'yes', 'y', 't', 'on'}:
            return True
        if s_l in {'0', 'false', 'no', 'n', 'f', 'off'}:
            return False
        raise ValueError(f'Invalid boolean literal: {s!r}')

    # arguments for argparse.ArgumentParser.add_argument()
    name: Union[str, tuple[str, str]]
    dest: Optional[str] = None
    metavar: Optional[str] = None
    type: Optional[Callable[[str], Any]] = None
    nargs: Optional[str] = None
    action: Optional[Union[str, Callable[[str], Any], builtins.type[argparse.Action]]] = None
    default: Any = None
    version: Optional[str] = None
    choices: Optional[tuple[str, ...]] = None
    const: Optional[Any] = None
    help: Optional[str] = None

    # metadata for config file parsing
    config_key: Optional[str] = None
    config_push: Callable[[argparse.Namespace, Optional[str], str, Any], None] = config_set_if_unset

    def _names(self) -> tuple[str, ...]:
        return self.name if isinstance(self.name, tuple) else (self.name,)

    def argparse_dest(self) -> str:
        # It'd be nice if argparse exported this, but I don't see that in the API
        if self.dest:
            return self.dest
        return self._names()[0].lstrip('-').replace('-', '_')

    def add_to(self, parser: argparse.ArgumentParser) -> None:
        kwargs = {
            key: val
            for key in dataclasses.asdict(self)
            if (key not in ('name', 'config_key', 'config_push') and (val := getattr(self, key)) is not None)
        }
        args = self._names()
        parser.add_argument(*args, **kwargs)

    def apply_config(
        self,
        namespace: argparse.Namespace,
        section: str,
        group: Optional[str],
        key: str,
        value: Any,
    ) -> None:
        assert f'{section}/{key}' == self.config_key
        dest = self.argparse_dest()

        conv: Callable[[str], Any]
        if self.action == argparse.BooleanOptionalAction:
            # We need to handle this case separately: the options are called
            # --foo and --no-foo, and no argument is parsed. But in the config
            # file, we have Foo=yes or Foo=no.
            conv = self.parse_boolean
        elif self.type:
            conv = self.type
        else:
            conv = lambda s: s  # noqa: E731

        if section == 'Kernel:':
            # Per-kernel settings are VERSION=VALUE on the command line, the
            # version is the section group in the config file.
            if not group:
                raise ValueError(f'Kernel version missing in section [{section}]')
            value = [conv(f'{group}={value}')]
        elif self.name in ['--extra-sign', '--initrd-prepend']:
            value = [conv(v) for v in value.split()]
        else:
            value = conv(value)

        self.config_push(namespace, None, dest, value)

    def config_example(self) -> tuple[Optional[str], Optional[str], Optional[str]]:
        if not self.config_key:
            return None, None, None
        section_name, key = self.config_key.split('/', 1)
        if section_name.endswith(':'):
            section_name += 'VERSION'
        if self.choices:
            value = '|'.join(self.choices)
        else:
            value = self.metavar or self.argparse_dest().upper()
        if '=' in value:
            value = value.split('=', 1)[1]
        return (section_name, key, value)


CONFIG_ITEMS = [
    ConfigItem(
        '--version',
        action='version',
        version=f'{PROG} {__version__}',
    ),
    ConfigItem(
        ('--hook', '-k'),
        action='store_true',
        help='read the changed paths from standard input, one per line',
    ),
    ConfigItem(
        '--summary',
        help='print parsed config and exit',
        action='store_true',
    ),
    ConfigItem(
        ('--config', '-c'),
        metavar='PATH',
        type=Path,
        help='configuration file',
    ),
    ConfigItem(
        '--key-dir',
        metavar='DIR',
        type=Path,
        help='directory with the db key and certificate, default is /etc/efi-keys',
        config_key='Keys/KeyDir',
    ),
    ConfigItem(
        '--secureboot-private-key',
        dest='sb_key',
        metavar='PATH',
        type=Path,
        help='private key for SB signing, default is DB.key in the key directory',
        config_key='Keys/SecureBootPrivateKey',
    ),
    ConfigItem(
        '--secureboot-certificate',
        dest='sb_cert',
        metavar='PATH',
        type=Path,
        help='certificate for SB signing, default is DB.crt in the key directory',
        config_key='Keys/SecureBootCertificate',
    ),
    ConfigItem(
        '--signing-engine',
        metavar='ENGINE',
        help='OpenSSL engine to use for signing',
        config_key='Keys/SigningEngine',
    ),
    ConfigItem(
        '--esp-dir',
        metavar='DIR',
        type=Path,
        help='EFI system partition mount point, default is /boot',
        config_key='Output/ESPDir',
    ),
    ConfigItem(
        '--out-dir',
        metavar='DIR',
        type=Path,
        help='output directory relative to the ESP, default is EFI/Arch',
        config_key='Output/OutDir',
    ),
    ConfigItem(
        '--backup',
        action=argparse.BooleanOptionalAction,
        help='keep the previous image as .bak',
        config_key='Output/Backup',
    ),
    ConfigItem(
        '--extra-sign',
        metavar='PATH',
        type=Path,
        action='append',
        help='additional file to sign in place, if not signed yet',
        config_key='Output/ExtraSign',
        config_push=ConfigItem.config_list_prepend,
    ),
    ConfigItem(
        '--cmdline',
        metavar='TEXT|@PATH',
        help='default kernel command line [.cmdline section]',
        config_key='Image/Cmdline',
    ),
    ConfigItem(
        '--splash',
        metavar='BMP',
        help='splash image bitmap file [.splash section], empty to disable',
        config_key='Image/Splash',
    ),
    ConfigItem(
        '--os-release',
        metavar='PATH',
        type=Path,
        help='path to os-release file [.osrel section]',
        config_key='Image/OSRelease',
    ),
    ConfigItem(
        '--initrd-prepend',
        metavar='PATH',
        type=Path,
        action='append',
        help='image to put in front of the initrd (e.g. microcode), skipped if missing',
        config_key='Image/InitrdPrepend',
        config_push=ConfigItem.config_list_prepend,
    ),
    ConfigItem(
        '--boot-dir',
        metavar='DIR',
        type=Path,
        help='directory with the kernels and initrds, default is /boot',
        config_key='Image/BootDir',
    ),
    ConfigItem(
        '--efi-arch',
        metavar='ARCH',
        choices=tuple(EFI_ARCHES),
        help='target EFI architecture',
        config_key='Image/EFIArch',
    ),
    ConfigItem(
        '--stub',
        type=Path,
        help='path to the EFI stub file',
        config_key='Image/Stub',
    ),
    ConfigItem(
        '--kernel-cmdline',
        dest='cmdline_overrides',
        metavar='VERSION=TEXT',
        type=parse_kernel_override,
        action='append',
        help='kernel command line for one kernel',
        config_key='Kernel:/Cmdline',
        config_push=ConfigItem.config_list_prepend,
    ),
    ConfigItem(
        '--kernel-initrd',
        dest='initrd_overrides',
        metavar='VERSION=PATH',
        type=parse_kernel_override,
        action='append',
        help='initrd for one kernel',
        config_key='Kernel:/Initrd',
        config_push=ConfigItem.config_list_prepend,
    ),
    ConfigItem(
        '--tools',
        type=Path,
        action='append',
        help='Directories to search for tools (sbsign, sbverify)',
    ),
]

CONFIGFILE_ITEMS = {item.config_key: item for item in CONFIG_ITEMS if item.config_key}


def apply_config(namespace: argparse.Namespace, filename: Union[str, Path, None] = None) -> None:
    if filename is None:
        if namespace.config:
            # Config set by the user, use that.
            filename = namespace.config
            print(f'Using config file: {filename}', file=sys.stderr)
        else:
            # Try to look for a config file then use the first one found.
            for config_dir in DEFAULT_CONFIG_DIRS:
                filename = Path(config_dir) / DEFAULT_CONFIG_FILE
                if filename.is_file():
                    # Found a config file, use it.
                    print(f'Using found config file: {filename}', file=sys.stderr)
                    break
            else:
                # No config file specified or found, nothing to do.
                return

    cp = configparser.ConfigParser(
        comment_prefixes='#',
        inline_comment_prefixes='#',
        delimiters='=',
        empty_lines_in_values=False,
        interpolation=None,
        strict=False,
    )
    # Do not make keys lowercase
    cp.optionxform = lambda option: option  # type: ignore

    # The API is not great.
    read = cp.read(filename)
    if not read:
        raise ValueError(f'Failed to read {filename}')

    for section_name, section in cp.items():
        idx = section_name.find(':')
        if idx >= 0:
            section_name, group = section_name[: idx + 1], section_name[idx + 1 :]
            if not section_name or not group:
                raise ValueError('Section name components cannot be empty')
            if ':' in group:
                raise ValueError('Section name cannot contain more than one ":"')
        else:
            group = None
        for key, value in section.items():
            if item := CONFIGFILE_ITEMS.get(f'{section_name}/{key}'):
                item.apply_config(namespace, section_name, group, key, value)
            else:
                print(f'Unknown config setting [{section_name}] {key}=', file=sys.stderr)


def config_example() -> Iterator[str]:
    prev_section: Optional[str] = None
    for item in CONFIG_ITEMS:
        section, key, value = item.config_example()
        if section:
            if prev_section != section:
                if prev_section:
                    yield ''
                yield f'[{section}]'
                prev_section = section
            yield f'{key} = {value}'


def create_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog=PROG,
        description='Generate and sign kernel images for UEFI Secure Boot',
        usage='\n  '
        + textwrap.dedent("""\
          {b}sbupdate{e} [options…]
            {b}sbupdate{e} --hook [options…] <CHANGED-PATHS
        """).format(b=Style.bold, e=Style.reset),
        allow_abbrev=False,
        epilog='\n  '.join(('config file:', *config_example())),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    for item in CONFIG_ITEMS:
        item.add_to(p)

    # Suppress printing of usage synopsis on errors
    p.error = lambda message: p.exit(2, f'{p.prog}: error: {message}\n')  # type: ignore

    return p


def resolve_cmdline(value: Optional[str]) -> str:
    if value and value.startswith('@'):
        value = Path(value[1:]).read_text()

    # Drop whitespace from the command line. Configuration specified in the config file may span
    # multiple lines, and a trailing newline would end up in the last kernel argument.
    return ' '.join((value or '').split())


def find_key_file(key_dir: Path, *names: str) -> Path:
    for name in names:
        if (key_dir / name).exists():
            return key_dir / name
    return key_dir / names[0]


def finalize_options(opts: argparse.Namespace) -> None:
    opts.cmdline = resolve_cmdline(opts.cmdline)
    if not opts.cmdline:
        raise ValueError('Cmdline= (the default kernel command line) is not defined or empty')

    opts.cmdline_overrides = {
        version: resolve_cmdline(value) for version, value in opts.cmdline_overrides or ()
    }
    opts.initrd_overrides = {version: Path(value) for version, value in opts.initrd_overrides or ()}

    if opts.key_dir is None:
        opts.key_dir = Path('/etc/efi-keys')
    if opts.sb_key is None:
        opts.sb_key = find_key_file(opts.key_dir, 'DB.key', 'db.key')
    if opts.sb_cert is None:
        opts.sb_cert = find_key_file(opts.key_dir, 'DB.crt', 'db.crt')

    if opts.esp_dir is None:
        opts.esp_dir = Path('/boot')
    if opts.out_dir is None:
        opts.out_dir = Path('EFI/Arch')
    if opts.boot_dir is None:
        opts.boot_dir = Path('/boot')
    if opts.backup is None:
        opts.backup = True

    opts.extra_sign = opts.extra_sign or []
    if opts.initrd_prepend is None:
        opts.initrd_prepend = [opts.boot_dir / 'intel-ucode.img', opts.boot_dir / 'amd-ucode.img']

    if opts.splash is None:
        opts.splash = Path('/usr/share/systemd/bootctl/splash-arch.bmp')
    elif opts.splash:
        opts.splash = Path(opts.splash)
    else:
        opts.splash = None

    if opts.os_release is None:
        p = Path('/etc/os-release')
        if not p.exists():
            p = Path('/usr/lib/os-release')
        opts.os_release = p

    if opts.efi_arch is None:
        opts.efi_arch = guess_efi_arch()
    elif opts.efi_arch not in EFI_ARCHES:
        # Only the command line is checked by argparse, the config file value is not.
        raise ValueError(f'Unsupported architecture {opts.efi_arch}')

    if opts.stub is None:
        opts.stub = Path(f'/usr/lib/systemd/boot/efi/linux{opts.efi_arch}.efi.stub')

    opts.tools = opts.tools or []


def check_inputs(opts: SbupdateConfig) -> None:
    if not opts.esp_dir.is_dir():
        raise ValueError(f'{opts.esp_dir} does not exist')

    # With an engine, the key is an engine-specific designation and not a file.
    paths = [opts.sb_cert] if opts.signing_engine else [opts.sb_key, opts.sb_cert]

    for path in paths:
        # Check that we can open the file, or generate an exception
        try:
            path.open().close()
        except OSError as e:
            raise ValueError(f'Cannot read {path}: {e.strerror}') from e


def parse_args(args: Optional[list[str]] = None) -> argparse.Namespace:
    opts = create_parser().parse_args(args)
    apply_config(opts)
    finalize_options(opts)
    return opts


def main() -> None:
    try:
        opts = SbupdateConfig.from_namespace(parse_args())
        check_inputs(opts)
    except (ValueError, OSError) as e:
        error(str(e))
        sys.exit(1)

    if opts.summary:
        pprint.pprint(vars(opts))
        return

    changed_paths = read_hook_input(sys.stdin) if opts.hook else ()
    sys.exit(run(opts, changed_paths))


if __name__ == '__main__':
    main()
