# (c) Copyright 2022 Aaron Kimball
#
# Reconstruction of ChibiOS/RT kernel objects (threads registry, virtual timers,
# trace buffer, globals and statistics) from a halted target.

import functools
from types import MappingProxyType

from chibios_dbg.proxy import TargetUnavailableError, UnresolvedError
from chibios_dbg.snapshot import MISSING, NO_NAME, NOT_ENABLED, OVERFLOW, \
    ThreadSnapshot, TimerSnapshot, TraceEvent, TraceType, StatCounter, GlobalSnapshot, \
    ReadyPayload, SwitchPayload, IsrPayload, HaltPayload, UserPayload, state_label
from chibios_dbg.term import MsgLevel

THREAD_T = 'struct ch_thread'
VIRTUAL_TIMER_T = 'struct ch_virtual_timer'
TRACE_EVENT_T = 'trace_event_t'

STACK_FILL_BYTE = 0x55  # CH_DBG_STACK_FILL_VALUE

THREAD_NAME_LEN = 16
ISR_NAME_LEN = 16
HALT_REASON_LEN = 16
PANIC_MSG_LEN = 32

# Counters in ch.kernel_stats that only track a number of occurrences.
_STAT_COUNTS = [
    ("Number of IRQs", "n_irq"),
    ("Number of Context Switches", "n_ctxswc"),
]

# Time measurement blocks (time_measurement_t) in ch.kernel_stats.
_STAT_MEASUREMENTS = [
    ("Threads Critical Zones", "m_crit_thd"),
    ("ISRs Critical Zones", "m_crit_isr"),
]


def field_expr(struct_type, addr, field, width=32):
    """
    Expression for a field of the struct at a target address, cast to an unsigned int.

    e.g. field_expr('struct ch_thread', 0x20000800, 'prio') ->
        '(uint32_t)((struct ch_thread *)0x20000800)->prio'
    """
    return f'(uint{width}_t)(({struct_type} *){addr:#x})->{field}'


def global_expr(path, width=32):
    """ Expression for the value of a global (or a path within it). """
    return f'(uint{width}_t){path}'


def address_expr(path):
    """ Expression for the address of a global (or a path within it). """
    return f'(uint32_t)&{path}'


def sizeof_expr(type_name):
    return f'(uint32_t)sizeof ({type_name})'


class KernelObjectsError(Exception):
    """
    Base class for errors that prevent a kernel object snapshot from being taken.
    """
    pass


class KernelNotFoundError(KernelObjectsError):
    """ The kernel symbols are not present in the target image. """
    pass


class KernelNotInitializedError(KernelObjectsError):
    """ The kernel is present but the scheduler has not been started yet. """
    pass


class RegistryNotFoundError(KernelObjectsError):
    pass


class RegistryDisabledError(KernelObjectsError):
    """ The kernel was built without the threads registry (CH_CFG_USE_REGISTRY). """
    pass


class TimerListNotFoundError(KernelObjectsError):
    pass


class TraceBufferNotFoundError(KernelObjectsError):
    pass


class GlobalStateNotFoundError(KernelObjectsError):
    pass


class StatisticsNotFoundError(KernelObjectsError):
    pass


class FieldNotFoundError(KernelObjectsError):
    """ A field that every build of the kernel has could not be read. """
    pass


class CorruptionError(KernelObjectsError):
    """
    A linked structure failed its integrity check. The snapshot cannot be trusted.
    """

    NULL_LINK = 'NULL pointer'
    LIST_VIOLATION = 'double linked list violation'

    def __init__(self, structure, kind, addr=None):
        self.structure = structure
        self.kind = kind
        self.addr = addr

        msg = f'ChibiOS/RT {structure} integrity check failed, {kind}'
        if addr is not None:
            msg += f' at {addr:#010x}'
        super().__init__(msg)


def _snapshot(fn):
    """
    Decorator for the public read methods of KernelObjects.

    Checks that the kernel is ready before reading anything. If it is not ready, or
    the target becomes unavailable partway through, the method returns None. A
    required field that cannot be resolved is reported as a FieldNotFoundError.
    """

    @functools.wraps(fn)
    def _read(self, *args, **kwargs):
        try:
            if not self.is_ready():
                self._debugger.verboseprint(f'{fn.__name__}: target not ready')
                return None
            return fn(self, *args, **kwargs)
        except TargetUnavailableError as e:
            self._debugger.verboseprint(f'{fn.__name__}: target unavailable: {e}')
            return None
        except UnresolvedError as e:
            raise FieldNotFoundError(f'Required kernel field not found on target: {e}') from e

    return _read


class KernelObjects(object):
    """
    Reads ChibiOS/RT kernel objects through the debugger's DebugProxy.

    Every read_*() method takes a fresh snapshot: nothing is cached between calls.
    Each returns a fully-populated result, None if the target is not ready (e.g.
    running), or raises a KernelObjectsError.
    """

    def __init__(self, debugger):
        self._debugger = debugger

    def _proxy(self):
        return self._debugger.get_proxy()

    def _number(self, expr):
        val = self._proxy().eval_number(expr)
        self._debugger.verboseprint(expr, ' = ', str(val))
        return val

    def _optional(self, expr, default=MISSING):
        """
        Read a field that the kernel configuration may have compiled out.
        """
        try:
            return self._number(expr)
        except UnresolvedError:
            self._debugger.verboseprint(expr, ' not found')
            return default

    def _cstring(self, addr, max_len):
        return self._proxy().read_cstring(addr, max_len)

    def _optional_cstring(self, addr, max_len, default=MISSING):
        try:
            return self._cstring(addr, max_len)
        except UnresolvedError:
            return default

    def is_ready(self):
        """
        Return True if the kernel is running on the target and its objects can be read.

        Returns False if the target can't be queried right now (e.g., it is running).
        Raises KernelNotFoundError or KernelNotInitializedError.
        """
        try:
            current = self._number(global_expr('ch.rlist.current'))
        except UnresolvedError as e:
            raise KernelNotFoundError('ChibiOS/RT not found on target') from e
        except TargetUnavailableError:
            return False

        if current == 0:
            raise KernelNotInitializedError('ChibiOS/RT not yet initialized')

        return True

    def _walk_list(self, anchor, struct_type, next_field, prev_field, structure, disabled_err):
        """
        Iterate over the addresses of the nodes in a circular doubly-linked list.

        `anchor` is the list header, which is linked into the ring but is not a data
        element; iteration stops when the walk comes back around to it. Every node's
        back-link is checked against the node it was reached from.

        If the forward-link field itself can't be read, `disabled_err` is raised.
        """
        visited = set()
        previous = anchor
        current = anchor
        while True:
            try:
                current = self._number(field_expr(struct_type, current, next_field))
            except UnresolvedError as e:
                raise disabled_err from e

            if current == 0:
                raise CorruptionError(structure, CorruptionError.NULL_LINK, previous)

            try:
                back = self._number(field_expr(struct_type, current, prev_field))
            except UnresolvedError as e:
                # The forward link points somewhere that doesn't hold a node.
                raise CorruptionError(structure, CorruptionError.LIST_VIOLATION, current) from e

            if back == 0:
                raise CorruptionError(structure, CorruptionError.NULL_LINK, current)
            if back != previous:
                raise CorruptionError(structure, CorruptionError.LIST_VIOLATION, current)

            if current == anchor:
                return  # Full cycle.

            if current in visited:
                raise CorruptionError(structure, CorruptionError.LIST_VIOLATION, current)
            visited.add(current)

            yield current
            previous = current

    ###### Threads registry

    @_snapshot
    def read_threads(self):
        """
        Return the threads in the registry as a read-only mapping from thread
        address to ThreadSnapshot, in registry order (oldest thread first).
        """
        try:
            rlist = self._number(address_expr('ch.rlist'))
        except UnresolvedError as e:
            raise RegistryNotFoundError('ready list not found on target') from e

        disabled = RegistryDisabledError('ChibiOS/RT registry not enabled in kernel')
        threads = {}
        for tp in self._walk_list(rlist, THREAD_T, 'newer', 'older', 'registry', disabled):
            threads[tp] = self._read_thread(tp)

        self._debugger.verboseprint(f'Read {len(threads)} threads from registry')
        return MappingProxyType(threads)

    def thread_name(self, tp):
        """
        Return the name of the thread at address tp, '<no name>' if its name pointer
        is NULL, or '-' if the kernel doesn't store thread names.
        """
        try:
            name_addr = self._number(field_expr(THREAD_T, tp, 'name'))
        except UnresolvedError:
            return MISSING

        if name_addr == 0:
            return NO_NAME
        return self._optional_cstring(name_addr, THREAD_NAME_LEN)

    def _stack_unused(self, stklimit, stack):
        if not isinstance(stklimit, int) or not isinstance(stack, int):
            return MISSING
        if stklimit <= 0 or stack <= 0:
            return MISSING
        if stack < stklimit:
            return OVERFLOW

        try:
            return self._proxy().scan_fill(stklimit, stack, STACK_FILL_BYTE)
        except UnresolvedError:
            return MISSING

    def _read_thread(self, tp):
        def _field(name, width=32):
            return field_expr(THREAD_T, tp, name, width)

        stklimit = self._optional(_field('wabase'))

        # The saved stack pointer is ctx.r13 on ARM ports and ctx.sp elsewhere.
        stack = self._optional(_field('ctx.r13'), None)
        if stack is None:
            stack = self._optional(_field('ctx.sp'))

        state = self._number(_field('state'))

        return ThreadSnapshot(
            addr=tp,
            stack=stack,
            stklimit=stklimit,
            stkunused=self._stack_unused(stklimit, stack),
            name=self.thread_name(tp),
            state=state,
            state_s=state_label(state),
            flags=self._number(_field('flags')),
            prio=self._number(_field('prio')),
            refs=self._optional(_field('refs')),
            time=self._optional(_field('time')),
            wtobjp=self._optional(_field('u.wtobjp')),
            stats_n=self._optional(_field('stats.n')),
            stats_worst=self._optional(_field('stats.worst')),
            stats_cumulative=self._optional(_field('stats.cumulative', 64)))

    ###### Virtual timers

    @_snapshot
    def read_timers(self):
        """
        Return the armed virtual timers as a read-only mapping from timer address to
        TimerSnapshot, in delta list order (soonest first).
        """
        try:
            vtlist = self._number(address_expr('ch.vtlist'))
        except UnresolvedError as e:
            raise TimerListNotFoundError('virtual timers list not found on target') from e

        missing = TimerListNotFoundError('virtual timers list links not found on target')
        timers = {}
        for vtp in self._walk_list(vtlist, VIRTUAL_TIMER_T, 'next', 'prev', 'delta list', missing):
            timers[vtp] = TimerSnapshot(
                addr=vtp,
                delta=self._number(field_expr(VIRTUAL_TIMER_T, vtp, 'delta')),
                func=self._number(field_expr(VIRTUAL_TIMER_T, vtp, 'func')),
                par=self._number(field_expr(VIRTUAL_TIMER_T, vtp, 'par')))

        return MappingProxyType(timers)

    ###### Trace buffer

    @_snapshot
    def read_trace(self):
        """
        Return the trace buffer contents as a read-only mapping from index to TraceEvent,
        oldest first. The newest slot has index 0; older slots have negative indices. Unused
        slots are skipped but still occupy their index.
        """
        try:
            size = self._number(global_expr('ch.trace_buffer.size'))
        except UnresolvedError as e:
            raise TraceBufferNotFoundError('trace buffer not found on target') from e

        rec_size = self._number(sizeof_expr(TRACE_EVENT_T))
        start = self._number(global_expr('ch.trace_buffer.buffer'))
        end = start + size * rec_size
        ptr = self._number(global_expr('ch.trace_buffer.ptr'))

        # The write pointer indicates the oldest record in a full ring.
        events = {}
        index = -size + 1
        for _ in range(size):
            type_tag = self._number(field_expr(TRACE_EVENT_T, ptr, 'type'))
            if type_tag != TraceType.UNUSED:
                events[index] = self._read_trace_event(ptr, index, type_tag)

            ptr += rec_size
            if ptr >= end:
                ptr = start
            index += 1

        return MappingProxyType(events)

    def _read_trace_event(self, ptr, index, type_tag):
        def _field(name):
            return self._number(field_expr(TRACE_EVENT_T, ptr, name))

        state = _field('state')

        if type_tag == TraceType.READY:
            payload = ReadyPayload(tp=_field('u.rdy.tp'), msg=_field('u.rdy.msg'))
        elif type_tag == TraceType.SWITCH:
            payload = SwitchPayload(ntp=_field('u.sw.ntp'), wtobjp=_field('u.sw.wtobjp'))
        elif type_tag == TraceType.ISR_ENTER or type_tag == TraceType.ISR_LEAVE:
            payload = IsrPayload(
                name=self._optional_cstring(_field('u.isr.name'), ISR_NAME_LEN))
        elif type_tag == TraceType.HALT:
            payload = HaltPayload(
                reason=self._optional_cstring(_field('u.halt.reason'), HALT_REASON_LEN))
        elif type_tag == TraceType.USER:
            payload = UserPayload(up1=_field('u.user.up1'), up2=_field('u.user.up2'))
        else:
            self._debugger.msg_q(MsgLevel.WARN,
                                 f'Unknown trace record type {type_tag} at index {index}')
            payload = None

        return TraceEvent(
            index=index,
            type=type_tag,
            state=state,
            state_s=state_label(state),
            rtstamp=_field('rtstamp'),
            time=_field('time'),
            payload=payload)

    ###### Global variables

    @_snapshot
    def read_globals(self):
        """
        Return the system global variables as a GlobalSnapshot.

        Values for kernel features that are not compiled in read '<not enabled>'.
        """
        try:
            delta = self._number(global_expr('ch.vtlist.delta'))
        except UnresolvedError as e:
            raise GlobalStateNotFoundError('virtual timers list not found on target') from e

        values = {}
        values['vt_systime'] = self._optional(global_expr('ch.vtlist.systime'), NOT_ENABLED)
        values['vt_lasttime'] = self._optional(global_expr('ch.vtlist.lasttime'), delta)

        try:
            current = self._number(global_expr('ch.rlist.current'))
            if current != 0:
                values['r_current'] = f'{current:#010x} "{self.thread_name(current)}"'
            else:
                values['r_current'] = '0'
        except UnresolvedError:
            values['r_current'] = NOT_ENABLED

        values['r_preempt'] = self._optional(global_expr('ch.rlist.preempt'), NOT_ENABLED)

        try:
            panic_msg = self._number(global_expr('ch.dbg.panic_msg'))
            if panic_msg == 0:
                values['dbg_panic_msg'] = '<NULL>'
            else:
                values['dbg_panic_msg'] = self._cstring(panic_msg, PANIC_MSG_LEN)
        except UnresolvedError:
            values['dbg_panic_msg'] = NOT_ENABLED

        isr_cnt = self._optional(global_expr('ch.dbg.isr_cnt'), None)
        if isr_cnt is None:
            values['dbg_isr_cnt'] = NOT_ENABLED
        elif isr_cnt == 0:
            values['dbg_isr_cnt'] = 'not within ISR'
        else:
            values['dbg_isr_cnt'] = 'within ISR'

        lock_cnt = self._optional(global_expr('ch.dbg.lock_cnt'), None)
        if lock_cnt is None:
            values['dbg_lock_cnt'] = NOT_ENABLED
        elif lock_cnt == 0:
            values['dbg_lock_cnt'] = 'not within lock'
        else:
            values['dbg_lock_cnt'] = 'within lock'

        return GlobalSnapshot(values)

    ###### Statistics

    @_snapshot
    def read_statistics(self):
        """
        Return the kernel statistics as a read-only mapping from counter name to
        StatCounter.

        A counter is omitted if any of its fields can't be read; the kernel only
        tracks the ones enabled in its configuration.
        """
        try:
            self._number(address_expr('ch.kernel_stats'))
        except UnresolvedError as e:
            raise StatisticsNotFoundError('statistics info structure not found on target') from e

        counters = {}
        for (label, field) in _STAT_COUNTS:
            try:
                n = self._number(global_expr(f'ch.kernel_stats.{field}'))
            except UnresolvedError:
                continue
            counters[label] = StatCounter(best=None, worst=None, n=n, cumulative=None)

        for (label, field) in _STAT_MEASUREMENTS:
            try:
                counters[label] = StatCounter(
                    best=self._number(global_expr(f'ch.kernel_stats.{field}.best')),
                    worst=self._number(global_expr(f'ch.kernel_stats.{field}.worst')),
                    n=self._number(global_expr(f'ch.kernel_stats.{field}.n')),
                    cumulative=self._number(global_expr(f'ch.kernel_stats.{field}.cumulative', 64)))
            except UnresolvedError:
                continue

        return MappingProxyType(counters)
