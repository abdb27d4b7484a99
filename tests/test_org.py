import pytest

from conftest import ME, add_organization, addr
from crisp.crisp_datatypes import BatchAction, TransactionAction
from crisp.crisp_errors import CommandError
from crisp.crisp_org import Organization, encode_call_script, flatten_transactions
from crisp.crisp_runtime import ScriptRunner

ORG1, ORG2, ORG3 = addr("a1"), addr("a2"), addr("a3")

VOTING1, FINANCE1, AGENT1, DELAY1 = addr("11"), addr("12"), addr("13"), addr("14")
VOTING2, FINANCE2 = addr("21"), addr("22")
VOTING3 = addr("31")

TARGET = addr("9")

CREATE_VOTES = "0x" + "c" * 64
CREATE_PAYMENTS = "0x" + "d" * 64
EXECUTE = "0x" + "f" * 64


@pytest.fixture
def acls(chain, fetcher):
    acl1 = add_organization(
        chain, fetcher, ORG1,
        apps={
            "voting": (VOTING1, {"CREATE_VOTES_ROLE": CREATE_VOTES}),
            "finance": (FINANCE1, {"CREATE_PAYMENTS_ROLE": CREATE_PAYMENTS}),
            "agent": (AGENT1, {"EXECUTE_ROLE": EXECUTE}),
            "delay": (DELAY1, {}),
        },
        permissions={FINANCE1: [(CREATE_PAYMENTS, [VOTING1], VOTING1)]},
        forwarders={VOTING1: 1, DELAY1: 2},
    )
    acl2 = add_organization(
        chain, fetcher, ORG2,
        apps={
            "voting": (VOTING2, {"CREATE_VOTES_ROLE": CREATE_VOTES}),
            "finance": (FINANCE2, {"CREATE_PAYMENTS_ROLE": CREATE_PAYMENTS}),
        },
    )
    acl3 = add_organization(chain, fetcher, ORG3, apps={"voting": (VOTING3, {})})
    return acl1, acl2, acl3


@pytest.fixture
def runner(clients, acls):
    return ScriptRunner(clients=clients)


def script(*lines):
    return "\n".join(["load org"] + list(lines))


@pytest.mark.asyncio
async def test_fetch_organization(clients, acls):
    async def load_artifact(code, uri):
        return {"roles": [{"id": "CREATE_VOTES_ROLE", "bytes": CREATE_VOTES}]}

    org = await Organization.fetch(ORG1, clients, load_artifact)
    assert org.acl == acls[0]
    assert org.app_identifiers() == ["voting", "finance", "agent", "delay"]
    assert org.resolve_app("finance").address == FINANCE1
    assert org.resolve_app(FINANCE1.upper().replace("0X", "0x")).name == "finance"
    assert org.apps[FINANCE1.lower()].permissions[CREATE_PAYMENTS].has_grantee(VOTING1)


@pytest.mark.asyncio
async def test_grant_existing_permission(runner, codec, acls):
    res = await runner.handle_script(script(
        f"org:connect {ORG1} (",
        "  grant @me finance CREATE_PAYMENTS_ROLE",
        ")",
    ))
    assert res.status == 'success', res.error_message
    assert res.actions == [TransactionAction(
        acls[0], codec.encode_call("grantPermission(address,address,bytes32)", [ME, FINANCE1, CREATE_PAYMENTS]),
    )]


@pytest.mark.asyncio
async def test_grant_to_existing_grantee_fails(runner):
    res = await runner.handle_script(script(
        f"org:connect {ORG1} (",
        "  grant voting finance CREATE_PAYMENTS_ROLE",
        ")",
    ))
    assert res.status == 'error'
    assert "grantee already has given permission on app finance" in res.error_message
    assert res.error_location.line == 3


@pytest.mark.asyncio
async def test_grant_creates_permission_with_manager(runner, codec, acls):
    res = await runner.handle_script(script(
        f"org:connect {ORG1} (",
        "  grant @me voting CREATE_VOTES_ROLE voting",
        ")",
    ))
    assert res.status == 'success', res.error_message
    assert res.actions == [TransactionAction(
        acls[0],
        codec.encode_call(
            "createPermission(address,address,bytes32,address)", [ME, VOTING1, CREATE_VOTES, VOTING1],
        ),
    )]


@pytest.mark.asyncio
async def test_new_permission_requires_a_manager(runner):
    res = await runner.handle_script(script(
        f"org:connect {ORG1} (",
        "  grant @me voting CREATE_VOTES_ROLE",
        ")",
    ))
    assert res.status == 'error'
    assert f"required permission manager for role {CREATE_VOTES} on app voting" in res.error_message


@pytest.mark.asyncio
async def test_unknown_role(runner):
    res = await runner.handle_script(script(
        f"org:connect {ORG1} (",
        "  grant @me voting NOPE_ROLE voting",
        ")",
    ))
    assert res.status == 'error'
    assert 'given permission "NOPE_ROLE" doesn\'t exist on app voting' in res.error_message


@pytest.mark.asyncio
async def test_role_hashed_when_app_has_no_artifact_roles(runner, codec, acls):
    res = await runner.handle_script(script(
        f"org:connect {ORG1} (",
        "  grant @me delay PAUSE_ROLE voting",
        ")",
    ))
    assert res.status == 'success', res.error_message
    role = codec.id("PAUSE_ROLE")
    assert res.actions[0].data == codec.encode_call(
        "createPermission(address,address,bytes32,address)", [ME, DELAY1, role, VOTING1],
    )


@pytest.mark.asyncio
async def test_revoke_and_remove_manager(runner, codec, acls):
    res = await runner.handle_script(script(
        f"org:connect {ORG1} (",
        "  revoke voting finance CREATE_PAYMENTS_ROLE true",
        ")",
    ))
    assert res.status == 'success', res.error_message
    acl = acls[0]
    assert res.actions == [
        TransactionAction(acl, codec.encode_call(
            "revokePermission(address,address,bytes32)", [VOTING1, FINANCE1, CREATE_PAYMENTS])),
        TransactionAction(acl, codec.encode_call(
            "removePermissionManager(address,bytes32)", [FINANCE1, CREATE_PAYMENTS])),
    ]


@pytest.mark.asyncio
async def test_revoke_missing_grantee(runner):
    res = await runner.handle_script(script(
        f"org:connect {ORG1} (",
        "  revoke @me finance CREATE_PAYMENTS_ROLE",
        ")",
    ))
    assert res.status == 'error'
    assert "doesn't have the given permission on app finance" in res.error_message


@pytest.mark.asyncio
async def test_forwarding_through_one_app(runner, codec, acls):
    res = await runner.handle_script(script(
        f"org:connect {ORG1} voting (",
        "  grant @me finance CREATE_PAYMENTS_ROLE",
        ")",
    ))
    assert res.status == 'success', res.error_message
    grant = TransactionAction(
        acls[0], codec.encode_call("grantPermission(address,address,bytes32)", [ME, FINANCE1, CREATE_PAYMENTS]),
    )
    forward = TransactionAction(VOTING1, codec.encode_call("forward(bytes)", [encode_call_script([grant])]))
    assert res.actions == [BatchAction([grant], forward)]


@pytest.mark.asyncio
async def test_forwarders_wrap_in_listed_order(runner, codec):
    res = await runner.handle_script(script(
        f"org:connect {ORG1} voting delay (",
        f"  exec {TARGET} pause()",
        ') --context "weekly pause"',
    ))
    assert res.status == 'success', res.error_message
    inner = TransactionAction(TARGET, codec.encode_call("pause()", []))
    via_voting = TransactionAction(VOTING1, codec.encode_call("forward(bytes)", [encode_call_script([inner])]))
    via_delay = TransactionAction(DELAY1, codec.encode_call(
        "forward(bytes,bytes)", [encode_call_script([via_voting]), "0x" + "weekly pause".encode().hex()],
    ))
    assert res.actions == [BatchAction([inner], via_delay)]


@pytest.mark.asyncio
async def test_forwarder_with_context_requires_option(runner):
    res = await runner.handle_script(script(
        f"org:connect {ORG1} delay (",
        f"  exec {TARGET} pause()",
        ")",
    ))
    assert res.status == 'error'
    assert "context option missing" in res.error_message


@pytest.mark.asyncio
async def test_non_forwarder_is_rejected(runner):
    res = await runner.handle_script(script(
        f"org:connect {ORG1} finance (",
        f"  exec {TARGET} pause()",
        ")",
    ))
    assert res.status == 'error'
    assert f"app {FINANCE1} is not a forwarder" in res.error_message


@pytest.mark.asyncio
async def test_connect_needs_a_block(runner):
    res = await runner.handle_script(script(f"org:connect {ORG1} voting"))
    assert res.status == 'error'
    assert "last argument should be a set of commands" in res.error_message


@pytest.mark.asyncio
async def test_permission_commands_need_a_connection(runner):
    res = await runner.handle_script(script("org:grant a b c"))
    assert res.status == 'error'
    assert 'must be used within a "connect" command' in res.error_message


@pytest.mark.asyncio
async def test_nesting_indices_and_prefixed_identifiers(runner, codec, acls):
    program = runner.parse(script(
        f"org:connect {ORG1} (",
        f"  connect {ORG2} (",
        f"    connect {ORG3} (",
        "      grant @me _1:finance CREATE_PAYMENTS_ROLE",
        f"      grant @me _{ORG2}:voting CREATE_VOTES_ROLE _2:voting",
        "    )",
        "  )",
        ")",
    ))
    actions = await runner.interpret(program)
    org_module = runner.get_module("org")
    assert [o.address for o in org_module.connected] == [ORG1, ORG2, ORG3]
    assert [o.nesting_index for o in org_module.connected] == [1, 2, 3]
    assert org_module.get_connected_organization(ORG2.upper().replace("0X", "0x")).nesting_index == 2
    assert org_module.get_connected_organization("0x" + "9" * 40) is None
    assert actions == [
        TransactionAction(acls[0], codec.encode_call(
            "grantPermission(address,address,bytes32)", [ME, FINANCE1, CREATE_PAYMENTS])),
        TransactionAction(acls[1], codec.encode_call(
            "createPermission(address,address,bytes32,address)", [ME, VOTING2, CREATE_VOTES, VOTING2])),
    ]


@pytest.mark.asyncio
async def test_inner_identifiers_shadow_outer_ones(runner, codec, acls):
    program = runner.parse(script(
        f"org:connect {ORG1} (",
        f"  connect {ORG2} (",
        "    grant voting finance CREATE_PAYMENTS_ROLE voting",
        "  )",
        ")",
    ))
    actions = await runner.interpret(program)
    assert actions == [TransactionAction(acls[1], codec.encode_call(
        "createPermission(address,address,bytes32,address)", [VOTING2, FINANCE2, CREATE_PAYMENTS, VOTING2]))]


@pytest.mark.asyncio
async def test_connecting_twice_fails(runner):
    program = runner.parse(script(
        f"org:connect {ORG1} (",
        f"  connect {ORG2} (",
        f"    connect {ORG1} (",
        "    )",
        "  )",
        ")",
    ))
    with pytest.raises(CommandError) as exc:
        await runner.interpret(program)
    assert ORG1 in exc.value.message
    assert exc.value.loc.start.line == 4


@pytest.mark.asyncio
async def test_sequential_connects_reuse_artifacts(runner, fetcher):
    res = await runner.handle_script(script(
        f"org:connect {ORG1} (",
        ")",
        f"org:connect {ORG1} (",
        ")",
    ))
    assert res.status == 'success', res.error_message
    assert len([c for c in fetcher.calls if c.endswith("/artifact.json")]) == 4


@pytest.mark.asyncio
async def test_act_through_agent(runner, codec):
    res = await runner.handle_script(script(
        f"org:connect {ORG1} (",
        f"  act agent {TARGET} transfer(address,uint256) @me 5",
        ")",
    ))
    assert res.status == 'success', res.error_message
    call = TransactionAction(TARGET, codec.encode_call("transfer(address,uint256)", [ME, 5]))
    assert res.actions == [
        TransactionAction(AGENT1, codec.encode_call("forward(bytes)", [encode_call_script([call])])),
    ]


def test_call_script_encoding():
    call = TransactionAction(addr("ab"), "0x12345678")
    script = encode_call_script([call, call])
    assert script.startswith("0x00000001")
    chunk = "ab" * 20 + "00000004" + "12345678"
    assert script == "0x00000001" + chunk + chunk


def test_flatten_transactions():
    a = TransactionAction(addr("1"), "0x01")
    b = TransactionAction(addr("2"), "0x02")
    via = TransactionAction(addr("3"), "0x03")
    assert flatten_transactions([a, BatchAction([b], via)]) == [a, via]
    assert flatten_transactions([BatchAction([a, b])]) == [a, b]
