# (c) Copyright 2022 Aaron Kimball

"""
A scripted stand-in for a halted ChibiOS/RT target, for unit testing purposes.

MockTarget implements DebugProxy by parsing the expression strings the kernel readers
build (struct fields, globals, addresses of globals, and sizeof) and answering them
from plain dicts. Target memory is a sparse byte map. Helper methods build the
kernel's linked structures the way the kernel itself links them.
"""

import re

from chibios_dbg.proxy import DebugProxy, UnresolvedError, TargetUnavailableError

_FIELD_RE = re.compile(r'^\(uint(\d+)_t\)\(\((.+) \*\)(0x[0-9a-fA-F]+)\)->(.+)$')
_ADDRESS_RE = re.compile(r'^\(uint32_t\)&(.+)$')
_SIZEOF_RE = re.compile(r'^\(uint32_t\)sizeof \((.+)\)$')
_GLOBAL_RE = re.compile(r'^\(uint(\d+)_t\)(.+)$')

RLIST_ADDR = 0x20000100
VTLIST_ADDR = 0x20000180
KERNEL_STATS_ADDR = 0x20000200
TRACE_BUFFER_ADDR = 0x20001000
STRING_POOL_ADDR = 0x08004000
STRING_SLOT_SIZE = 64

STACK_FILL = 0x55


class MockTarget(DebugProxy):
    """
    Injectible DebugProxy whose "target" is a set of dicts:
        * objects: struct address -> {field path: value}
        * globals: global expression path -> value
        * addresses: global path -> its address
        * sizes: type name -> sizeof
        * memory: address -> byte
    """

    def __init__(self):
        self.objects = {}
        self.globals = {}
        self.addresses = {}
        self.sizes = {}
        self.memory = {}
        self.running = False
        self.resume_at = None  # Expression suffix that sets the target running when evaluated.
        self.closed = False
        self.evaluated = []   # Every expression asked of us, in order.
        self._next_string = STRING_POOL_ADDR

    def _lookup(self, expr):
        m = _FIELD_RE.match(expr)
        if m:
            addr = int(m.group(3), 16)
            fields = self.objects.get(addr)
            if fields is None or m.group(4) not in fields:
                raise UnresolvedError(f'Cannot access memory for {expr}')
            return fields[m.group(4)]

        m = _ADDRESS_RE.match(expr)
        if m:
            if m.group(1) not in self.addresses:
                raise UnresolvedError(f'No symbol "{m.group(1)}" in current context.')
            return self.addresses[m.group(1)]

        m = _SIZEOF_RE.match(expr)
        if m:
            if m.group(1) not in self.sizes:
                raise UnresolvedError(f'No symbol "{m.group(1)}" in current context.')
            return self.sizes[m.group(1)]

        m = _GLOBAL_RE.match(expr)
        if m:
            if m.group(2) not in self.globals:
                raise UnresolvedError(f'There is no member named {m.group(2)}.')
            return self.globals[m.group(2)]

        raise UnresolvedError(f'A syntax error in expression: {expr}')

    def evaluate(self, expr):
        if self.resume_at is not None and expr.endswith(self.resume_at):
            self.running = True
        if self.running:
            raise TargetUnavailableError('Selected thread is running.')
        self.evaluated.append(expr)
        return str(self._lookup(expr))

    def read_memory(self, addr, size):
        if self.running:
            raise TargetUnavailableError('Selected thread is running.')
        out = bytearray()
        for i in range(addr, addr + size):
            if i not in self.memory:
                raise UnresolvedError(f'Cannot access memory at address {i:#x}')
            out.append(self.memory[i])
        return bytes(out)

    def close(self):
        self.closed = True

    ###### Builders

    def write_memory(self, addr, data):
        for (i, b) in enumerate(data):
            self.memory[addr + i] = b

    def add_string(self, text):
        """
        Place a NUL-terminated string in the string pool and return its address.
        The slot is zero-padded so fixed-length reads past the NUL succeed.
        """
        addr = self._next_string
        data = text.encode('latin-1') + b'\x00'
        self.write_memory(addr, data.ljust(STRING_SLOT_SIZE, b'\x00'))
        self._next_string += max(STRING_SLOT_SIZE, len(data))
        return addr

    def init_kernel(self, current=None):
        """
        Set up an empty registry and timer list. The kernel is "started" unless
        current is 0; by default the current thread is the first one added.
        """
        self.addresses['ch.rlist'] = RLIST_ADDR
        self.objects[RLIST_ADDR] = {'newer': RLIST_ADDR, 'older': RLIST_ADDR}
        self.globals['ch.rlist.current'] = current if current is not None else RLIST_ADDR
        self._auto_current = current is None

        self.addresses['ch.vtlist'] = VTLIST_ADDR
        self.objects[VTLIST_ADDR] = {'next': VTLIST_ADDR, 'prev': VTLIST_ADDR}
        self.globals['ch.vtlist.delta'] = 0xFFFFFFFF

    def add_thread(self, addr, name='thread', prio=64, state=0, flags=0, stack_size=256,
                   stack_used=64, omit=()):
        """
        Create a thread and link it into the registry as the newest thread.

        The working area sits just below the thread struct; its lowest
        (stack_size - stack_used) bytes hold the fill pattern. Fields named in `omit`
        are left out, as if the kernel was built without them. name=None stores a
        NULL name pointer.
        """
        wabase = addr - stack_size
        self.write_memory(wabase, bytes([STACK_FILL]) * (stack_size - stack_used))
        self.write_memory(wabase + stack_size - stack_used, b'\x00' * stack_used)

        fields = {
            'wabase': wabase,
            'ctx.r13': wabase + stack_size - stack_used,
            'state': state,
            'flags': flags,
            'prio': prio,
            'refs': 1,
            'time': 100,
            'u.wtobjp': 0,
            'stats.n': 3,
            'stats.worst': 40,
            'stats.cumulative': 120,
            'name': 0 if name is None else self.add_string(name),
        }
        for f in omit:
            del fields[f]
        self.objects[addr] = fields

        anchor = self.objects[RLIST_ADDR]
        fields['newer'] = RLIST_ADDR
        fields['older'] = anchor['older']
        self.objects[anchor['older']]['newer'] = addr
        anchor['older'] = addr

        if self._auto_current and self.globals['ch.rlist.current'] == RLIST_ADDR:
            self.globals['ch.rlist.current'] = addr
        return fields

    def add_timer(self, addr, delta, func, par):
        """
        Append a virtual timer to the end of the delta list.
        """
        anchor = self.objects[VTLIST_ADDR]
        fields = {'delta': delta, 'func': func, 'par': par,
                  'next': VTLIST_ADDR, 'prev': anchor['prev']}
        self.objects[addr] = fields
        self.objects[anchor['prev']]['next'] = addr
        anchor['prev'] = addr
        return fields

    def init_trace(self, size, rec_size=16):
        """
        Create an empty trace ring of `size` records.
        """
        self.globals['ch.trace_buffer.size'] = size
        self.globals['ch.trace_buffer.buffer'] = TRACE_BUFFER_ADDR
        self.globals['ch.trace_buffer.ptr'] = TRACE_BUFFER_ADDR
        self.sizes['trace_event_t'] = rec_size
        self._trace_size = size
        self._trace_rec_size = rec_size
        for i in range(size):
            self.objects[TRACE_BUFFER_ADDR + i * rec_size] = {'type': 0}

    def add_trace_event(self, type_tag, state=0, rtstamp=0, time=0, **payload):
        """
        Write a record at the trace write pointer and advance it, as the kernel does.
        Payload fields are given with '_' for '.', e.g. u_rdy_tp=0x20000800.
        """
        ptr = self.globals['ch.trace_buffer.ptr']
        fields = {'type': type_tag, 'state': state, 'rtstamp': rtstamp, 'time': time}
        for (k, v) in payload.items():
            fields[k.replace('_', '.', 2)] = v
        self.objects[ptr] = fields

        ptr += self._trace_rec_size
        if ptr >= TRACE_BUFFER_ADDR + self._trace_size * self._trace_rec_size:
            ptr = TRACE_BUFFER_ADDR
        self.globals['ch.trace_buffer.ptr'] = ptr
        return fields

    def init_statistics(self):
        self.addresses['ch.kernel_stats'] = KERNEL_STATS_ADDR
