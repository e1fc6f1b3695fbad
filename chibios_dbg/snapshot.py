# (c) Copyright 2022 Aaron Kimball
#
# Immutable point-in-time records produced by the kernel object readers.

from collections import namedtuple
from types import MappingProxyType

# Placeholder for an optional field that could not be read from the target.
MISSING = '-'

# Placeholder for a global whose kernel feature is compiled out.
NOT_ENABLED = '<not enabled>'

# Thread name placeholder for a NULL name pointer.
NO_NAME = '<no name>'

# Unused-stack placeholder when the saved stack pointer is below the stack base.
OVERFLOW = 'overflow'

UNKNOWN_STATE = 'unknown'

# Thread states in the order of the CH_STATE_* constants.
THREAD_STATES = [
    "READY",
    "CURRENT",
    "STARTED",
    "SUSPENDED",
    "QUEUED",
    "WTSEM",
    "WTMTX",
    "WTCOND",
    "SLEEPING",
    "WTEXIT",
    "WTOREVT",
    "WTANDEVT",
    "SNDMSGQ",
    "SNDMSG",
    "WTMSG",
    "FINAL",
]


def state_label(state):
    """
    Decode a thread state code. Codes outside the known set decode to 'unknown'.
    """
    if isinstance(state, int) and 0 <= state < len(THREAD_STATES):
        return THREAD_STATES[state]
    return UNKNOWN_STATE


ThreadSnapshot = namedtuple('ThreadSnapshot', [
    'addr',              # Address of the thread_t; also its key in the registry dict.
    'stack',             # Saved stack pointer (ctx.r13 / ctx.sp).
    'stklimit',          # Lowest address of the thread working area.
    'stkunused',         # Bytes still holding the stack fill pattern.
    'name',
    'state',
    'state_s',
    'flags',
    'prio',
    'refs',
    'time',
    'wtobjp',
    'stats_n',
    'stats_worst',
    'stats_cumulative',
])

TimerSnapshot = namedtuple('TimerSnapshot', ['addr', 'delta', 'func', 'par'])


class TraceType(object):
    """
    Trace record type tags (CH_TRACE_TYPE_*).
    """
    UNUSED = 0
    READY = 1
    SWITCH = 2
    ISR_ENTER = 3
    ISR_LEAVE = 4
    HALT = 5
    USER = 6

    _names = {
        UNUSED: 'unused',
        READY: 'ready',
        SWITCH: 'switch',
        ISR_ENTER: 'isr-enter',
        ISR_LEAVE: 'isr-leave',
        HALT: 'halt',
        USER: 'user',
    }

    @staticmethod
    def name(type_tag):
        return TraceType._names.get(type_tag, f'type {type_tag}')


TraceEvent = namedtuple('TraceEvent', [
    'index',    # 0 is the newest slot; older slots are negative.
    'type',
    'state',
    'state_s',
    'rtstamp',
    'time',
    'payload',  # One of the *Payload records below, or None for an unrecognized type.
])

ReadyPayload = namedtuple('ReadyPayload', ['tp', 'msg'])
SwitchPayload = namedtuple('SwitchPayload', ['ntp', 'wtobjp'])
IsrPayload = namedtuple('IsrPayload', ['name'])
HaltPayload = namedtuple('HaltPayload', ['reason'])
UserPayload = namedtuple('UserPayload', ['up1', 'up2'])

StatCounter = namedtuple('StatCounter', ['best', 'worst', 'n', 'cumulative'])

# Keys of the globals snapshot, in display order.
GLOBAL_KEYS = [
    'vt_systime',
    'vt_lasttime',
    'r_current',
    'r_preempt',
    'dbg_panic_msg',
    'dbg_isr_cnt',
    'dbg_lock_cnt',
]


def GlobalSnapshot(values):
    """
    Freeze a dict of global values into a read-only mapping with the full key set.
    Keys absent from `values` are filled with NOT_ENABLED.
    """
    ordered = {}
    for key in GLOBAL_KEYS:
        ordered[key] = values.get(key, NOT_ENABLED)
    return MappingProxyType(ordered)
