import pytest

from plan_runtime.core.Exceptions import ToolCallParseError
from plan_runtime.streaming.accumulator import (
    PartialToolCall,
    ToolCallAccumulator,
    ToolCallFragment,
    fold_fragment,
    fragments_from_delta,
    reconstruct_tool_calls,
)


def _fragments():
    return [
        ToolCallFragment(index=1, id="call_b", name="noti", arguments_chunk='{"to": ', type="function"),
        ToolCallFragment(index=0, id="call_a", name="fet", arguments_chunk='{"q": '),
        ToolCallFragment(index=1, name="fy", arguments_chunk='"ops"}'),
        ToolCallFragment(index=0, name="ch", arguments_chunk='"x"}'),
    ]


def test_interleaved_indices_reconstruct_two_calls():
    acc = ToolCallAccumulator()
    for fragment in _fragments():
        acc.add(fragment)
    result = acc.finalize()

    assert result.ok
    assert [(c.id, c.name, c.arguments) for c in result.calls] == [
        ("call_a", "fetch", {"q": "x"}),
        ("call_b", "notify", {"to": "ops"}),
    ]


def test_concatenation_per_index_is_independent_of_interleaving():
    by_index = {0: [], 1: []}
    for f in _fragments():
        by_index[f.index].append(f)
    # Interleave the two per-index sequences differently; within an index order is kept.
    orders = [
        by_index[0] + by_index[1],
        by_index[1] + by_index[0],
        [by_index[0][0], by_index[1][0], by_index[0][1], by_index[1][1]],
    ]
    finals = []
    for order in orders:
        records = ()
        for f in order:
            records = fold_fragment(records, f)
        finals.append(records)
    assert all(f == finals[0] for f in finals)


def test_later_index_first_preallocates_blanks():
    records = fold_fragment((), ToolCallFragment(index=2, name="x"))
    assert len(records) == 3
    assert records[0] == PartialToolCall() and records[1] == PartialToolCall()
    assert records[2].name == "x"


def test_id_and_type_set_once():
    records = ()
    records = fold_fragment(records, ToolCallFragment(index=0, id="first", type="function"))
    records = fold_fragment(records, ToolCallFragment(index=0, id="second", type="other"))
    assert records[0].id == "first"
    assert records[0].type == "function"


def test_fold_does_not_mutate_input():
    before = (PartialToolCall(name="a"),)
    after = fold_fragment(before, ToolCallFragment(index=0, name="b"))
    assert before[0].name == "a"
    assert after[0].name == "ab"


def test_parse_failure_is_isolated():
    acc = ToolCallAccumulator()
    acc.add(ToolCallFragment(index=0, id="good", name="a", arguments_chunk='{"k": 1}'))
    acc.add(ToolCallFragment(index=1, id="bad", name="b", arguments_chunk='{"k": '))
    acc.add(ToolCallFragment(index=2, id="list", name="c", arguments_chunk="[1, 2]"))
    result = acc.finalize()

    assert [c.id for c in result.calls] == ["good"]
    assert [e.call_id for e in result.errors] == ["bad", "list"]
    assert all(isinstance(e, ToolCallParseError) for e in result.errors)
    assert result.errors[0].raw_arguments == '{"k": '


def test_empty_arguments_and_missing_id():
    result = reconstruct_tool_calls([PartialToolCall(name="ping"), PartialToolCall()])
    assert len(result.calls) == 1
    call = result.calls[0]
    assert call.arguments == {}
    assert call.id.startswith("call_")
    assert call.type == "function"


def test_nameless_records_are_skipped():
    result = reconstruct_tool_calls([PartialToolCall(id="x", arguments="{}")])
    assert result.calls == [] and result.errors == []


def test_negative_index_rejected():
    with pytest.raises(ValueError):
        fold_fragment((), ToolCallFragment(index=-1))


def test_openai_style_deltas():
    class Fn:
        def __init__(self, name=None, arguments=None):
            self.name = name
            self.arguments = arguments

    class Item:
        def __init__(self, index, id=None, fn=None, type=None):
            self.index = index
            self.id = id
            self.function = fn
            self.type = type

    acc = ToolCallAccumulator()
    acc.add_delta([Item(0, "call_1", Fn("get_", ""), "function")])
    acc.add_delta([{"index": 0, "function": {"name": "weather", "arguments": '{"city"'}}])
    acc.add_delta([{"index": 0, "function": {"arguments": ': "Lisbon"}'}}])
    result = acc.finalize()
    assert result.calls[0].to_dict() == {
        "id": "call_1", "name": "get_weather", "arguments": {"city": "Lisbon"}, "type": "function",
    }


def test_fragments_from_delta_defaults_index_to_position():
    frags = fragments_from_delta([{"function": {"name": "a"}}, {"function": {"name": "b"}}])
    assert [f.index for f in frags] == [0, 1]


def test_independent_accumulators_do_not_share_state():
    a, b = ToolCallAccumulator(), ToolCallAccumulator()
    a.add(ToolCallFragment(index=0, name="x"))
    assert len(b) == 0
    a.reset()
    assert len(a) == 0
