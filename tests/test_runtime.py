import pytest

from conftest import addr
from crisp.crisp_bindings import BindingSpace
from crisp.crisp_datatypes import TransactionAction
from crisp.crisp_errors import CommandError, ParseError
from crisp.crisp_modules import Command
from crisp.crisp_runtime import DEFAULT_MODULES, ExecutionResult, ScriptRunner
from crisp.crisp_std import StdModule

TARGET = addr("7")


class ExplodeCommand(Command):
    name = "explode"

    async def run(self, module, c, interpreter):
        raise ValueError("kaboom")


class ExplodingStd(StdModule):
    commands = dict(StdModule.commands, explode=ExplodeCommand())


@pytest.mark.asyncio
async def test_handle_script_success(clients, codec):
    runner = ScriptRunner(clients=clients)
    res = await runner.handle_script(f"print \"hello\"\nexec {TARGET} pause()")
    assert res.status == 'success', res.error_message
    assert res.side_effects == [{'topics': ['stdout'], 'message': 'hello'}]
    assert res.actions == [TransactionAction(TARGET, codec.encode_call("pause()", []))]
    assert res.format_error() == ""


@pytest.mark.asyncio
async def test_session_keeps_bindings_between_scripts(clients):
    runner = ScriptRunner(clients=clients)
    await runner.handle_script("set $x 2")
    res = await runner.handle_script("print $x")
    assert res.side_effects == [{'topics': ['stdout'], 'message': '2'}]

    runner.reset()
    res = await runner.handle_script("print $x")
    assert res.status == 'error'


@pytest.mark.asyncio
async def test_parse_error_is_reported_with_context(clients):
    runner = ScriptRunner(clients=clients)
    res = await runner.handle_script("set $x 1\nset $y ]\nprint $x")
    assert res.status == 'error'
    assert res.actions == []
    assert res.error_location.line == 2
    assert res.error_message.startswith("ParseError: ")
    assert "> 2 | set $y ]" in res.error_message
    assert res.format_error().startswith(f"Error on line 2, col {res.error_location.column}: ParseError")
    assert res.side_effects[-1]['topics'] == ['stderr']


@pytest.mark.asyncio
async def test_runtime_error_points_at_the_node(clients):
    runner = ScriptRunner(clients=clients)
    res = await runner.handle_script("print 1\nset $x (4 / 0)")
    assert res.status == 'error'
    assert res.error_message.startswith("ExpressionError: invalid operation. Can't divide by zero")
    assert res.format_error().startswith("Error on line 2, col 9: ExpressionError")
    lines = res.error_message.splitlines()
    assert "> 2 | set $x (4 / 0)" in lines
    assert "    |         ^" in lines
    assert res.side_effects[0] == {'topics': ['stdout'], 'message': '1'}
    assert res.side_effects[-1] == {'topics': ['stderr'], 'message': res.error_message}


@pytest.mark.asyncio
async def test_unexpected_exceptions_become_internal_errors(clients):
    runner = ScriptRunner(clients=clients, modules=dict(DEFAULT_MODULES, std=ExplodingStd))
    res = await runner.handle_script("print 1\nexplode")
    assert res.status == 'error'
    assert res.error_message.startswith("InternalError: kaboom")
    assert res.error_location.line == 2


@pytest.mark.asyncio
async def test_interpret_starts_fresh_with_initial_bindings(clients, codec):
    runner = ScriptRunner(clients=clients)
    await runner.handle_script("set $amount 1")
    program = runner.parse(f"exec {TARGET} pay(uint256) $amount\nexec vault pay(uint256) $fee")
    actions = await runner.interpret(program, {
        "amount": 5,
        "$fee": 1,
        BindingSpace.ADDR: {"vault": TARGET},
    })
    assert actions == [
        TransactionAction(TARGET, codec.encode_call("pay(uint256)", [5])),
        TransactionAction(TARGET, codec.encode_call("pay(uint256)", [1])),
    ]


@pytest.mark.asyncio
async def test_interpret_raises(clients):
    runner = ScriptRunner(clients=clients)
    with pytest.raises(ParseError):
        runner.parse("set $x ]")
    with pytest.raises(CommandError):
        await runner.interpret(runner.parse("set x 1"))


def test_get_module_before_any_run():
    runner = ScriptRunner()
    assert isinstance(runner.get_module("std"), StdModule)
    assert runner.get_module("org") is None


def test_format_error_without_location():
    res = ExecutionResult(status='error', error_message="InternalError: boom")
    assert res.format_error() == "InternalError: boom"
