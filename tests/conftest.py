# tests/conftest.py
"""
Shared builders for the binsig test-suite.

Programs are assembled by hand from IR terms; all helpers target x86_64
unless stated otherwise.
"""

from typing import Iterable, Optional, Sequence

import pytest

from binsig.abstract_domain import AbstractIdentifier, DataDomain
from binsig.context import Context
from binsig.graph import build_graph
from binsig.ir import (
    Assign,
    BinOp,
    BinOpType,
    Blk,
    Const,
    Load,
    Program,
    Store,
    Sub,
    Term,
    Tid,
    Var,
    Variable,
)
from binsig.project import CALLING_CONVENTIONS, ExternSymbol, Project
from binsig.state import State


# ── Registers ────────────────────────────────────────────────────

RAX = Variable("RAX", 8)
RBX = Variable("RBX", 8)
RCX = Variable("RCX", 8)
RDX = Variable("RDX", 8)
RDI = Variable("RDI", 8)
RSI = Variable("RSI", 8)
RSP = Variable("RSP", 8)
R8 = Variable("R8", 8)
R9 = Variable("R9", 8)

X64_CCONV = CALLING_CONVENTIONS["x86_64"]["__stdcall"]


# ── Expression / term builders ───────────────────────────────────

def var(variable: Variable) -> Var:
    return Var(variable)


def const(value: int, size: int = 8) -> Const:
    return Const(value, size)


def add(lhs, rhs) -> BinOp:
    if isinstance(rhs, int):
        rhs = Const(rhs, lhs.bytesize())
    return BinOp(BinOpType.INT_ADD, lhs, rhs)


def sub_(lhs, rhs) -> BinOp:
    if isinstance(rhs, int):
        rhs = Const(rhs, lhs.bytesize())
    return BinOp(BinOpType.INT_SUB, lhs, rhs)


def assign(tid: str, target: Variable, value) -> Term:
    return Term(Tid(tid), Assign(target, value))


def load(tid: str, target: Variable, address) -> Term:
    return Term(Tid(tid), Load(target, address))


def store(tid: str, address, value) -> Term:
    return Term(Tid(tid), Store(address, value))


def jmp(tid: str, term) -> Term:
    return Term(Tid(tid), term)


def block(tid: str, defs: Sequence[Term] = (), jmps: Sequence[Term] = ()) -> Term:
    return Term(Tid(tid), Blk(list(defs), list(jmps)))


def function(tid: str, blocks: Sequence[Term], name: Optional[str] = None) -> Term:
    return Term(Tid(tid), Sub(name or tid, list(blocks)))


def make_project(
    subs: Iterable[Term] = (),
    extern_symbols: Iterable[ExternSymbol] = (),
    architecture: str = "x86_64",
) -> Project:
    program = Program(
        subs={s.tid: s for s in subs},
        extern_symbols={e.tid: e for e in extern_symbols},
    )
    return Project.for_architecture(architecture, program)


def make_state(func: str = "func") -> State:
    return State.new(Tid(func), RSP, X64_CCONV)


def param_id(func: str, register: Variable) -> AbstractIdentifier:
    return AbstractIdentifier.from_var(Tid(func), register)


def target(ident: AbstractIdentifier, offset: int = 0, size: int = 8) -> DataDomain:
    return DataDomain.from_target(ident, offset, size)


def make_context(project: Project, variadic_args=None) -> Context:
    return Context(project, build_graph(project), variadic_args)


# ── Fixtures ─────────────────────────────────────────────────────

@pytest.fixture
def project():
    return make_project()


@pytest.fixture
def context(project):
    return make_context(project)


@pytest.fixture
def state():
    return make_state()
