# A small in-memory stand-in for an embedded Lua 5.3 state: a value stack
# with the C API's reader, predicate and pusher vocabulary, plus a global
# function registry. It exists so bindings can be driven end to end without
# linking a real interpreter.

### Boilerplate

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable
import logging

from luabinder import Tag, CallStack

log = logging.getLogger(__name__)

class LuaError(Exception): pass

def error_if(cond, msg):
  if cond:
    raise LuaError(msg)

@dataclass(frozen=True)
class LightUserdata:
  addr: int

@dataclass(frozen=True)
class Userdata:
  addr: int

@dataclass
class Slot:
  tag: Tag
  v: Any

### Stack

class Stack(CallStack):
  slots: list[Slot]

  MAX_SIZE = 1000000

  def __init__(self):
    self.slots = []

  def absindex(self, i):
    if i < 0:
      return len(self.slots) + 1 + i
    return i

  def slot(self, i):
    i = self.absindex(i)
    if 1 <= i <= len(self.slots):
      return self.slots[i - 1]
    return None

  def gettop(self):
    return len(self.slots)

  def settop(self, n):
    n = self.absindex(n)
    error_if(n < 0, "invalid new top")
    for s in self.slots[n:]:
      if s.tag == Tag.STRING:
        s.v[:] = bytes(len(s.v))
    del self.slots[n:]
    while len(self.slots) < n:
      self.slots.append(Slot(Tag.NIL, None))

  def pop(self, n = 1):
    self.settop(-n - 1)

  def type(self, i):
    s = self.slot(i)
    return Tag.NONE if s is None else s.tag

  def isboolean(self, i):
    return self.type(i) == Tag.BOOLEAN

  def isinteger(self, i):
    s = self.slot(i)
    return s is not None and s.tag == Tag.NUMBER and isinstance(s.v, int)

  def isnumber(self, i):
    return self.type(i) == Tag.NUMBER

  def isstring(self, i):
    return self.type(i) == Tag.STRING

  def isuserdata(self, i):
    return self.type(i) in (Tag.USERDATA, Tag.LIGHTUSERDATA)

  def islightuserdata(self, i):
    return self.type(i) == Tag.LIGHTUSERDATA

  def toboolean(self, i):
    s = self.slot(i)
    return s is not None and s.tag != Tag.NIL and not (s.tag == Tag.BOOLEAN and not s.v)

  def tointeger(self, i):
    s = self.slot(i)
    if s is None or s.tag != Tag.NUMBER:
      return 0
    if isinstance(s.v, int):
      return s.v
    if s.v.is_integer():
      return int(s.v)
    return 0

  def tonumber(self, i):
    s = self.slot(i)
    if s is None or s.tag != Tag.NUMBER:
      return 0.0
    return float(s.v)

  def tostring(self, i):
    s = self.slot(i)
    if s is None or s.tag != Tag.STRING:
      return None
    return s.v

  def touserdata(self, i):
    s = self.slot(i)
    if s is None or s.tag not in (Tag.USERDATA, Tag.LIGHTUSERDATA):
      return None
    return s.v

  def push_slot(self, tag, v):
    error_if(len(self.slots) >= Stack.MAX_SIZE, "stack overflow")
    self.slots.append(Slot(tag, v))

  def pushnil(self):
    self.push_slot(Tag.NIL, None)

  def pushboolean(self, b):
    self.push_slot(Tag.BOOLEAN, bool(b))

  def pushinteger(self, n):
    self.push_slot(Tag.NUMBER, wrap_integer(n))

  def pushnumber(self, f):
    self.push_slot(Tag.NUMBER, float(f))

  def pushstring(self, s):
    if isinstance(s, str):
      s = s.encode('utf-8', 'surrogateescape')
    self.push_slot(Tag.STRING, bytearray(s))

  def pushlightuserdata(self, addr):
    self.push_slot(Tag.LIGHTUSERDATA, addr)

  def pushuserdata(self, addr):
    self.push_slot(Tag.USERDATA, addr)

  def newtable(self):
    self.push_slot(Tag.TABLE, {})

  def pushcfunction(self, fn):
    self.push_slot(Tag.FUNCTION, fn)

  def push(self, v):
    match v:
      case None            : self.pushnil()
      case bool()          : self.pushboolean(v)
      case int()           : self.pushinteger(v)
      case float()         : self.pushnumber(v)
      case str() | bytes() : self.pushstring(v)
      case LightUserdata() : self.pushlightuserdata(v.addr)
      case Userdata()      : self.pushuserdata(v.addr)
      case dict()          : self.push_slot(Tag.TABLE, dict(v))
      case _ if callable(v): self.pushcfunction(v)
      case _               : raise TypeError(f"no Lua representation for {v!r}")

  def topython(self, i):
    s = self.slot(i)
    error_if(s is None, f"invalid stack index {i}")
    match s.tag:
      case Tag.STRING        : return bytes(s.v).decode('utf-8', 'surrogateescape')
      case Tag.LIGHTUSERDATA : return LightUserdata(s.v)
      case Tag.USERDATA      : return Userdata(s.v)
      case _                 : return s.v

def wrap_integer(n):
  n = int(n) % (1 << 64)
  if n >= (1 << 63):
    return n - (1 << 64)
  return n

### State

class State:
  globals: dict[str, Callable[[Stack], int]]

  def __init__(self):
    self.globals = {}

  def register(self, name, fn):
    self.globals[name] = fn

  def call(self, name, *args):
    fn = self.globals.get(name)
    error_if(fn is None, f"attempt to call a nil value (global '{name}')")
    stack = Stack()
    for a in args:
      stack.push(a)
    n = fn(stack)
    error_if(not 0 <= n <= stack.gettop(), f"'{name}' reported {n} results with {stack.gettop()} on the stack")
    results = [stack.topython(i) for i in range(stack.gettop() - n + 1, stack.gettop() + 1)]
    log.debug("%s: %d argument(s), %d result(s)", name, len(args), n)
    stack.settop(0)
    return results
