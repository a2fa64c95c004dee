import pytest

from plan_runtime.core.sentinels import NO_VAL
from plan_runtime.data.resolver import (
    PlaceholderResolver,
    find_step_references,
    get_value_by_path,
    to_text,
)
from plan_runtime.data.store import StepResult

from conftest import save_completed


@pytest.mark.parametrize("text", ["", "plain text", "{ not } a {{ placeholder", "{{unknown:x}}"])
def test_strings_without_placeholders_are_unchanged(resolver, text):
    assert resolver.resolve("p1", text) == text


def test_step_reference_yields_value_text(store, resolver):
    save_completed(store, "p1", "s1", {"contact": {"email": "ada@example.com"}, "count": 3})
    assert resolver.resolve("p1", "{{step:s1.contact.email}}") == "ada@example.com"
    assert resolver.resolve("p1", "n={{step:s1.count}}") == "n=3"


def test_missing_path_without_fallback_stays_in_place(store, resolver):
    save_completed(store, "p1", "s1", {"a": 1})
    text = "x {{step:s1.b.c}} y"
    assert resolver.resolve("p1", text) == text


def test_unknown_step_and_other_plan_do_not_resolve(store, resolver):
    save_completed(store, "p1", "s1", {"a": 1})
    assert resolver.resolve("p2", "{{step:s1.a}}") == "{{step:s1.a}}"
    assert resolver.resolve("p1", "{{step:s9.a|fallback(none)}}") == "none"


def test_running_step_is_not_visible(store, resolver):
    store.save_step_result(StepResult.begin("p1", "s1"))
    assert resolver.resolve("p1", "{{step:s1.a|fallback(later)}}") == "later"


def test_plan_tag_and_fallback(store, resolver):
    store.save_plan_data("p1", "owner", "ops")
    assert resolver.resolve("p1", "to {{plan:owner}}") == "to ops"
    assert resolver.resolve("p1", "{{plan:missing|fallback(X)}}") == "X"
    assert resolver.resolve("p1", "{{plan:missing|fallback(\"quoted\")}}") == "quoted"
    assert resolver.resolve("p1", "{{plan:missing}}") == "{{plan:missing}}"


def test_fallback_literal_may_contain_braces(resolver):
    assert resolver.resolve("p1", "{{plan:x|fallback({})}}") == "{}"
    assert resolver.resolve("p1", "{{plan:x|fallback({\"a\": 1})}} end") == "{\"a\": 1} end"
    assert resolver.resolve("p1", "{{plan:x|fallback(\"[]\")|truncate(5)}}") == "[]"


def test_truncate_helper(store, resolver):
    save_completed(store, "p1", "s1", {"long": "abcdefghij", "short": "abc"})
    assert resolver.resolve("p1", "{{step:s1.long|truncate(4)}}") == "abcd..."
    assert resolver.resolve("p1", "{{step:s1.short|truncate(4)}}") == "abc"


def test_extract_helper(store, resolver):
    save_completed(store, "p1", "s1", {"owner": {"name": "Ada", "id": 7}})
    assert resolver.resolve("p1", '{{step:s1.owner|extract("name")}}') == "Ada"
    # absent field leaves the mapping as-is
    assert resolver.resolve("p1", '{{step:s1.owner|extract("zip")}}') == '{"name":"Ada","id":7}'


def test_chained_and_unknown_helpers(store, resolver):
    save_completed(store, "p1", "s1", {"owner": {"bio": "a very long biography"}})
    text = '{{step:s1.owner|extract("bio")|truncate(6)}}'
    assert resolver.resolve("p1", text) == "a very..."
    assert resolver.resolve("p1", "{{step:s1.owner.bio|shout()}}") == "a very long biography"


def test_each_occurrence_matched_independently(store, resolver):
    save_completed(store, "p1", "s1", {"id": "42"})
    text = "{{step:s1.id}}-{{step:s1.id}}-{{plan:t|fallback(z)}}"
    assert resolver.resolve("p1", text) == "42-42-z"


def test_substituted_text_is_not_rescanned(store, resolver):
    store.save_plan_data("p1", "inner", "{{plan:outer}}")
    store.save_plan_data("p1", "outer", "BAD")
    assert resolver.resolve("p1", "{{plan:inner}}") == "{{plan:outer}}"


def test_non_string_coercion():
    assert to_text(5) == "5"
    assert to_text(1.5) == "1.5"
    assert to_text(True) == "true"
    assert to_text(None) == "null"
    assert to_text([1, "a"]) == '[1,"a"]'


def test_list_indices_in_paths(store, resolver):
    save_completed(store, "p1", "s1", {"items": [{"name": "x"}, {"name": "y"}]})
    assert resolver.resolve("p1", "{{step:s1.items.1.name}}") == "y"
    assert resolver.resolve("p1", "{{step:s1.items[0].name}}") == "x"
    assert resolver.resolve("p1", "{{step:s1.items.5.name|fallback(-)}}") == "-"


def test_recurses_through_containers(store, resolver):
    save_completed(store, "p1", "s1", {"id": "42"})
    value = {"a": ["{{step:s1.id}}", 3, None], "b": {"c": "id={{step:s1.id}}"}, "d": True}
    assert resolver.resolve("p1", value) == {"a": ["42", 3, None], "b": {"c": "id=42"}, "d": True}


def test_preserve_types_for_whole_placeholder(store):
    save_completed(store, "p1", "s1", {"obj": {"k": [1, 2]}, "n": 4})
    typed = PlaceholderResolver(store, preserve_types=True)
    assert typed.resolve("p1", "{{step:s1.obj}}") == {"k": [1, 2]}
    assert typed.resolve("p1", "{{step:s1.n}}") == 4
    assert typed.resolve("p1", "n={{step:s1.n}}") == "n=4"
    assert typed.resolve("p1", "{{step:s1.zz}}") == "{{step:s1.zz}}"


def test_get_value_by_path_misses_return_sentinel():
    assert get_value_by_path({"a": {"b": None}}, "a.b") is None
    assert get_value_by_path({"a": 1}, "a.b") is NO_VAL
    assert get_value_by_path("text", "a") is NO_VAL


def test_find_step_references():
    args = {"x": "{{step:a.id}} and {{step:b.v|fallback(1)}}", "y": ["{{plan:t}}", "{{step:a.z}}"]}
    assert find_step_references(args) == {"a", "b"}
