# (c) Copyright 2022 Aaron Kimball
#
# Methods for capturing kernel state from a halted target and replaying it offline.
#
# A dump records the result of every expression the kernel object readers
# evaluated, plus the target memory they read. Replaying it through DumpDebugProxy
# reproduces the same snapshots without a connection to the target.

from elftools.elf.constants import SH_FLAGS
from elftools.elf.elffile import ELFFile
import os.path
from sortedcontainers import SortedDict

import chibios_dbg.debugger as debugger
import chibios_dbg.kernel as kernel
from chibios_dbg.proxy import DebugProxy, UnresolvedError
import chibios_dbg.serialize as serialize
from chibios_dbg.term import MsgLevel

SERIALIZED_STATE_KEY = 'state'

DUMP_SCHEMA_KEY = 'dump_schema'
DUMP_SCHEMA_VER = 1

# Number of bytes to retrieve from the target at a time when capturing RAM.
RAM_READ_SIZE = 256


class DumpFormatError(debugger.DebuggerError):
    """ The file is not a kernel dump, or was written by a newer version. """
    pass


def add_segment(segments, addr, data):
    """
    Add `data` at `addr` to a SortedDict of non-overlapping memory segments
    (start address -> bytes), merging it with any segment it overlaps or touches.
    Where they overlap, the new data wins.
    """
    merged_start = addr
    merged = bytes(data)
    for start in list(segments.irange(maximum=addr + len(data))):
        seg = segments[start]
        seg_end = start + len(seg)
        if seg_end < merged_start:
            continue  # Entirely below the new data.

        del segments[start]
        new_start = min(start, merged_start)
        new_end = max(seg_end, merged_start + len(merged))
        buf = bytearray(new_end - new_start)
        buf[start - new_start:seg_end - new_start] = seg
        buf[merged_start - new_start:merged_start - new_start + len(merged)] = merged
        merged_start = new_start
        merged = bytes(buf)

    segments[merged_start] = merged


def segment_bytes(segments, addr, size):
    """
    Return the `size` bytes at `addr` from a SortedDict of non-overlapping segments,
    or None if they're not all held in one segment.
    """
    for start in segments.irange(maximum=addr, reverse=True):
        seg = segments[start]
        if addr + size <= start + len(seg):
            return seg[addr - start:addr - start + size]
        return None  # The nearest segment at or below addr ends too soon.

    return None


class RecordingProxy(DebugProxy):
    """
    Wraps another DebugProxy and records every expression result and memory read
    that passes through it.
    """

    def __init__(self, proxy):
        self._proxy = proxy
        self.expressions = {}          # expr -> text, or None if it did not resolve.
        self.segments = SortedDict()   # Memory read so far; see add_segment().

    def evaluate(self, expr):
        try:
            text = self._proxy.evaluate(expr)
        except UnresolvedError:
            self.expressions[expr] = None
            raise

        self.expressions[expr] = text
        return text

    def read_memory(self, addr, size):
        data = bytes(self._proxy.read_memory(addr, size))
        add_segment(self.segments, addr, data)
        return data


class DumpDebugProxy(DebugProxy):
    """
    A DebugProxy that answers from a dump file instead of a live target.

    Expressions are answered from those recorded at capture time. Memory reads are
    served from the captured memory segments, then from the loadable sections of
    the firmware ELF image (so e.g. thread names held in flash still resolve).
    """

    def __init__(self, dump_data, elf_name=None, print_q=None):
        if dump_data[DUMP_SCHEMA_KEY] > DUMP_SCHEMA_VER:
            raise DumpFormatError(
                f"Cannot load dump schema with version={dump_data[DUMP_SCHEMA_KEY]}")

        self._print_q = print_q
        self._expressions = dict(dump_data.get('expressions') or {})
        self._memory = SortedDict()
        for (addr, data) in (dump_data.get('memory') or {}).items():
            add_segment(self._memory, addr, data)

        self.elf_name = elf_name
        self._image = SortedDict()
        if elf_name:
            self._read_elf_image(elf_name)

    def _msg(self, level, msg):
        if self._print_q is not None:
            self._print_q.put((msg, level))

    def _read_elf_image(self, elf_name):
        """
        Load the initialized, allocated sections of the ELF file into self._image.
        """
        try:
            with open(elf_name, 'rb') as f:
                elf = ELFFile(f)
                for elf_sect in elf.iter_sections():
                    if not elf_sect['sh_flags'] & SH_FLAGS.SHF_ALLOC:
                        continue  # Not part of the memory image.
                    if elf_sect['sh_type'] == 'SHT_NOBITS' or elf_sect['sh_size'] == 0:
                        continue  # .bss etc. have no image data.
                    add_segment(self._image, elf_sect['sh_addr'], elf_sect.data())
        except Exception as e:
            self._msg(MsgLevel.WARN, f'Error while reading ELF file {elf_name}: {e}')
            self._image = SortedDict()
            return

        self._msg(MsgLevel.INFO, f'Loaded {len(self._image)} image segments from {elf_name}')

    def evaluate(self, expr):
        try:
            text = self._expressions[expr]
        except KeyError:
            raise UnresolvedError(f"'{expr}' was not captured in the dump")

        if text is None:
            raise UnresolvedError(f"'{expr}' did not resolve on the target")
        return text

    def read_memory(self, addr, size):
        data = segment_bytes(self._memory, addr, size)
        if data is None:
            data = segment_bytes(self._image, addr, size)
        if data is None:
            raise UnresolvedError(f'Memory at {addr:#010x} (len={size}) not in dump')
        return data


def capture_dump(dbg, dump_filename):
    """
    Read all kernel objects from the target and store what was read in a file locally.

    The target must stay halted throughout; if it is running, or resumes before every
    reader has finished, DumpFormatError is raised and no file is written. If the
    config keys dump.ram_start and dump.ram_end are both set, that RAM window is
    captured as well.

    Returns the number of expressions recorded.
    """
    recorder = RecordingProxy(dbg.get_proxy())

    # Drive the readers through a session bound to the recorder.
    capture_dbg = debugger.Debugger(recorder, dbg.get_print_q(),
                                    force_config=dict(dbg.get_full_config()),
                                    elf_name=dbg.elf_name)
    kobj = capture_dbg.kernel()
    if not kobj.is_ready():
        raise DumpFormatError('Target is not halted; cannot capture a dump')

    readers = [
        kobj.read_threads,
        kobj.read_timers,
        kobj.read_trace,
        kobj.read_globals,
        kobj.read_statistics,
    ]
    for reader in readers:
        try:
            snapshot = reader()
        except kernel.KernelObjectsError as e:
            # Record it anyway; replaying the dump reproduces the same error.
            dbg.msg_q(MsgLevel.WARN, f'{reader.__name__}: {e}')
            continue

        if snapshot is None:
            # The target resumed partway through; the recording is incomplete.
            raise DumpFormatError(
                f'Target resumed during {reader.__name__}; no dump written')

    ram_start = dbg.get_conf('dump.ram_start')
    ram_end = dbg.get_conf('dump.ram_end')
    if ram_start is not None and ram_end is not None:
        dbg.msg_q(MsgLevel.INFO, f'Capturing RAM {ram_start:#010x}..{ram_end:#010x}')
        for read_at in range(ram_start, ram_end, RAM_READ_SIZE):
            try:
                recorder.read_memory(read_at, min(RAM_READ_SIZE, ram_end - read_at))
            except UnresolvedError as e:
                dbg.verboseprint(f'Skipping unreadable RAM at {read_at:#010x}: {e}')

    out = {}
    out['elf_file_name'] = dbg.elf_name
    out['expressions'] = recorder.expressions
    out['memory'] = dict(recorder.segments)
    out[DUMP_SCHEMA_KEY] = DUMP_SCHEMA_VER

    serialize.persist_config_file(dump_filename, SERIALIZED_STATE_KEY, out)
    return len(recorder.expressions)


def load_dump(filename, print_q, elf_name=None, history_change_hook=None, force_config=None):
    """
    Load a dump file and initialize a debugger instance around it.

    The ELF file named in the dump (relative paths are relative to the dump file) is
    used for memory outside the captured segments unless elf_name overrides it.
    """
    dump_data = serialize.load_config_file(print_q, filename, SERIALIZED_STATE_KEY)
    if dump_data.get(DUMP_SCHEMA_KEY) is None:
        raise DumpFormatError(f"'{filename}' is not a kernel dump file")

    if elf_name is None:
        elf_name = dump_data.get('elf_file_name')
        if elf_name and not os.path.isabs(elf_name):
            elf_name = os.path.join(os.path.dirname(os.path.abspath(filename)), elf_name)

    proxy = DumpDebugProxy(dump_data, elf_name, print_q)
    return debugger.Debugger(proxy, print_q, force_config=force_config,
                             history_change_hook=history_change_hook, elf_name=elf_name)
