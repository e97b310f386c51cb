# Binds typed Python callables to a Lua-style dynamic call stack. The file is
# ordered the way a call flows: the runtime boundary, type descriptors,
# decoding, validation, marshaling, result encoding and finally the
# trampoline that sequences them.

### Boilerplate

from __future__ import annotations
from dataclasses import dataclass
from enum import IntEnum
from functools import partial
from typing import Optional, Callable
import ctypes
import inspect
import logging
import math
import typing

log = logging.getLogger(__name__)

class BindingError(Exception): pass

class ArityMismatch(BindingError):
  def __init__(self, expected, got):
    super().__init__(f"incorrect argument count: expected {expected}, got {got}")
    self.expected = expected
    self.got = got

class TypeMismatch(BindingError):
  def __init__(self, position, expected, got):
    super().__init__(f"incorrect argument type at position {position}: expected {expected}, got {got.name.lower()}")
    self.position = position
    self.expected = expected
    self.got = got

def reject_if(cond, error):
  if cond:
    raise error

### Runtime Boundary

class Tag(IntEnum):
  NONE = -1
  NIL = 0
  BOOLEAN = 1
  LIGHTUSERDATA = 2
  NUMBER = 3
  STRING = 4
  TABLE = 5
  FUNCTION = 6
  USERDATA = 7
  THREAD = 8

class CallStack:
  gettop: Callable[[], int]
  type: Callable[[int], Tag]
  isboolean: Callable[[int], bool]
  isinteger: Callable[[int], bool]
  isnumber: Callable[[int], bool]
  isstring: Callable[[int], bool]
  isuserdata: Callable[[int], bool]
  islightuserdata: Callable[[int], bool]
  toboolean: Callable[[int], bool]
  tointeger: Callable[[int], int]
  tonumber: Callable[[int], float]
  tostring: Callable[[int], bytes|bytearray]
  touserdata: Callable[[int], int]
  pushboolean: Callable[[bool], None]
  pushinteger: Callable[[int], None]
  pushnumber: Callable[[float], None]
  pushstring: Callable[[bytes], None]
  pushlightuserdata: Callable[[int], None]

Trampoline = Callable[[CallStack], int]

### Options

@dataclass
class BindOptions:
  string_encoding: str = 'utf8'
  strict_numbers: bool = False

DEFAULT_OPTIONS = BindOptions()

### Types

class Type: pass
class ValType(Type): pass

@dataclass
class PrimValType(ValType):
  pass

class BoolType(PrimValType): pass
class IntType(PrimValType): pass
class NumberType(PrimValType): pass
class StringType(PrimValType): pass

@dataclass
class PointerType(ValType):
  pointee: Optional[type] = None

@dataclass
class FuncType(Type):
  params: list[ValType]
  result: Optional[ValType] = None

def type_name(t):
  match t:
    case BoolType()       : return 'boolean'
    case IntType()        : return 'integer'
    case NumberType()     : return 'number'
    case StringType()     : return 'string'
    case PointerType(None): return 'userdata'
    case PointerType(p)   : return f'userdata<{p.__name__}>'
  assert(False)

### Binding Signatures

def valtype_of(annotation):
  if annotation is bool:
    return BoolType()
  if annotation is int:
    return IntType()
  if annotation is float:
    return NumberType()
  if annotation is str:
    return StringType()
  if annotation is ctypes.c_void_p:
    return PointerType()
  if isinstance(annotation, type) and issubclass(annotation, ctypes._Pointer):
    return PointerType(annotation._type_)
  raise TypeError(f"cannot bind values of type {annotation!r}")

def functype_of(func):
  sig = inspect.signature(func)
  hints = typing.get_type_hints(func)
  params = []
  for p in sig.parameters.values():
    if p.kind in (p.VAR_POSITIONAL, p.VAR_KEYWORD, p.KEYWORD_ONLY):
      raise TypeError(f"cannot bind {func.__qualname__}: parameter {p.name} is not positional")
    if p.name not in hints:
      raise TypeError(f"cannot bind {func.__qualname__}: parameter {p.name} has no annotation")
    params.append(valtype_of(hints[p.name]))
  if 'return' not in hints:
    raise TypeError(f"cannot bind {func.__qualname__}: missing return annotation")
  ret = hints['return']
  result = None if ret is None or ret is type(None) else valtype_of(ret)
  return FuncType(params, result)

### Dynamic Values

class DynamicValue: pass

@dataclass
class BoolValue(DynamicValue):
  b: bool

@dataclass
class IntValue(DynamicValue):
  i: int

@dataclass
class NumberValue(DynamicValue):
  f: float

@dataclass
class TextValue(DynamicValue):
  s: str

@dataclass
class HandleValue(DynamicValue):
  addr: int

@dataclass
class UnsupportedValue(DynamicValue):
  tag: Tag

### Decoding

def decode(stack, i, opts = DEFAULT_OPTIONS):
  """
  Classify the value at stack position `i` and copy its payload out.

  Never raises for an unsupported kind: the value comes back as
  `UnsupportedValue` after a warning has been logged.
  """
  tag = Tag(stack.type(i))
  match tag:
    case Tag.BOOLEAN:
      return BoolValue(bool(stack.toboolean(i)))
    case Tag.NUMBER:
      if stack.isinteger(i):
        return IntValue(stack.tointeger(i))
      return NumberValue(stack.tonumber(i))
    case Tag.STRING:
      return TextValue(copy_string(stack.tostring(i), opts.string_encoding))
    case Tag.LIGHTUSERDATA | Tag.USERDATA:
      return HandleValue(stack.touserdata(i))
    case _:
      log.warning("type %s at stack position %d is not supported by the binder", tag.name.lower(), i)
      return UnsupportedValue(tag)

def copy_string(buf, encoding):
  # the runtime owns buf and may scrub it once the call returns
  return bytes(buf).decode(encoding, 'surrogateescape')

def as_bool(v):
  match v:
    case BoolValue(b) : return b
  assert(False)

def as_int(v):
  match v:
    case IntValue(i)    : return i
    case NumberValue(f) : return truncate_number(f)
  assert(False)

def truncate_number(f):
  assert(math.isfinite(f))
  return int(f)

def as_number(v):
  match v:
    case NumberValue(f) : return f
    case IntValue(i)    : return float(i)
  assert(False)

def as_string(v):
  match v:
    case TextValue(s) : return s
  assert(False)

def as_pointer(v, pointee = None):
  match v:
    case HandleValue(addr) : return reinterpret_pointer(addr, pointee)
  assert(False)

def reinterpret_pointer(addr, pointee):
  if pointee is None:
    return addr
  return ctypes.cast(addr, ctypes.POINTER(pointee))

def unpacker_for(t):
  match t:
    case BoolType()     : return as_bool
    case IntType()      : return as_int
    case NumberType()   : return as_number
    case StringType()   : return as_string
    case PointerType(p) : return partial(as_pointer, pointee = p)
  assert(False)

def convert(v, t):
  return unpacker_for(t)(v)

### Validation

def checker_for(t, opts = DEFAULT_OPTIONS):
  match t:
    case BoolType()    : return lambda stack, i: stack.isboolean(i)
    case IntType()     : return lambda stack, i: stack.isinteger(i)
    case NumberType()  :
      if opts.strict_numbers:
        return lambda stack, i: stack.isnumber(i) and not stack.isinteger(i)
      return lambda stack, i: stack.isnumber(i)
    case StringType()  : return lambda stack, i: stack.isstring(i)
    case PointerType() : return lambda stack, i: stack.isuserdata(i) or stack.islightuserdata(i)
  assert(False)

def check_arg(stack, i, t, opts = DEFAULT_OPTIONS):
  return bool(checker_for(t, opts)(stack, i))

def first_mismatch(stack, ts, i = 1, opts = DEFAULT_OPTIONS):
  for t in ts:
    if not check_arg(stack, i, t, opts):
      return i
    i += 1
  return None

def check_args(stack, ts, i = 1, opts = DEFAULT_OPTIONS):
  return first_mismatch(stack, ts, i, opts) is None

### Marshaling

def marshal_args(stack, ts, i = 1, opts = DEFAULT_OPTIONS):
  """
  Build the argument tuple for `ts` from stack positions `i`, `i+1`, ...

  The positions must already have passed `check_args`; nothing is
  re-validated here.
  """
  return tuple(unpacker_for(t)(decode(stack, i + k, opts)) for k,t in enumerate(ts))

### Result Encoding

def push_result(stack, v, t, opts = DEFAULT_OPTIONS):
  match t:
    case PointerType() : stack.pushlightuserdata(pointer_address(v))
    case IntType()     : stack.pushinteger(int(v))
    case NumberType()  : stack.pushnumber(float(v))
    case BoolType()    : stack.pushboolean(bool(v))
    case StringType()  : stack.pushstring(v.encode(opts.string_encoding, 'surrogateescape'))
    case _             : assert(False)

def pointer_address(v):
  if v is None:
    return 0
  if isinstance(v, int):
    return v
  return ctypes.cast(v, ctypes.c_void_p).value or 0

### Trampoline

class Binder:
  ft: FuncType
  opts: BindOptions

  def __init__(self, result, params, opts = None):
    self.ft = FuncType(list(params), result)
    self.opts = opts or DEFAULT_OPTIONS

  def static_binding(self, func) -> Trampoline:
    checkers = [checker_for(t, self.opts) for t in self.ft.params]
    unpackers = [unpacker_for(t) for t in self.ft.params]
    name = getattr(func, '__qualname__', repr(func))

    def trampoline(stack):
      try:
        args = self.lift_args(stack, checkers, unpackers)
      except BindingError as e:
        log.warning("%s: %s", name, e)
        return 0
      result = func(*args)
      log.debug("%s: called with %d argument(s)", name, len(args))
      if self.ft.result is None:
        return 0
      push_result(stack, result, self.ft.result, self.opts)
      return 1

    trampoline.__name__ = f"bound_{getattr(func, '__name__', 'function')}"
    trampoline.__wrapped__ = func
    trampoline.functype = self.ft
    return trampoline

  def lift_args(self, stack, checkers, unpackers):
    n = stack.gettop()
    reject_if(n != len(self.ft.params), ArityMismatch(len(self.ft.params), n))
    if not self.ft.params:
      return ()
    for i,(check,t) in enumerate(zip(checkers, self.ft.params), start = 1):
      reject_if(not check(stack, i), TypeMismatch(i, type_name(t), Tag(stack.type(i))))
    return tuple(unpack(decode(stack, i, self.opts)) for i,unpack in enumerate(unpackers, start = 1))

def bind(func, opts = None) -> Trampoline:
  ft = functype_of(func)
  return Binder(ft.result, ft.params, opts).static_binding(func)

def register(state, name, func, opts = None):
  trampoline = bind(func, opts)
  state.register(name, trampoline)
  return trampoline
