"""Tests for the schema registry."""

import pytest

from unarpc.error import SchemaConflict
from unarpc.schema import (
    FieldDefinition,
    MessageSchema,
    MethodDefinition,
    SchemaRegistry,
    ServiceDefinition,
)


def hello(*fields: FieldDefinition, name: str = "HelloRequest") -> MessageSchema:
    return MessageSchema(name, fields)


GREETING = FieldDefinition(1, "greeting", "string")


class TestMessageSchema:
    """Tests for message layout validation."""

    def test_lookup_by_number_and_name(self) -> None:
        schema = hello(GREETING, FieldDefinition(2, "count", "int32"))
        assert schema.by_number(2).name == "count"
        assert schema.by_name("greeting").number == 1
        assert schema.by_number(3) is None

    def test_duplicate_field_number(self) -> None:
        with pytest.raises(SchemaConflict, match="field number 1"):
            hello(GREETING, FieldDefinition(1, "other", "string"))

    def test_duplicate_field_name(self) -> None:
        with pytest.raises(SchemaConflict, match="greeting"):
            hello(GREETING, FieldDefinition(2, "greeting", "string"))

    def test_field_numbers_must_be_positive(self) -> None:
        with pytest.raises(SchemaConflict, match="positive"):
            hello(FieldDefinition(0, "greeting", "string"))

    def test_invalid_name(self) -> None:
        with pytest.raises(SchemaConflict, match="invalid message name"):
            MessageSchema("Hello Request", ())


class TestServiceDefinition:
    """Tests for service definitions."""

    def test_methods_bound_to_service(self) -> None:
        service = ServiceDefinition("Greeter", (MethodDefinition("SayHello", "A", "B"),))
        method = service.method("SayHello")
        assert method.service == "Greeter"
        assert method.full_name == "Greeter/SayHello"
        assert service.method_names == ("SayHello",)

    def test_unknown_method(self) -> None:
        service = ServiceDefinition("Greeter", ())
        assert not service.has_method("SayHello")
        with pytest.raises(KeyError):
            service.method("SayHello")

    def test_duplicate_methods(self) -> None:
        with pytest.raises(SchemaConflict, match="duplicate"):
            ServiceDefinition(
                "Greeter",
                (MethodDefinition("SayHello", "A", "B"), MethodDefinition("SayHello", "A", "B")),
            )


class TestSchemaRegistry:
    """Tests for SchemaRegistry definition and revision rules."""

    def test_define_and_lookup(self) -> None:
        registry = SchemaRegistry()
        schema = registry.define_message(hello(GREETING))
        assert registry.message("HelloRequest") is schema
        assert schema.revision == 1
        assert "HelloRequest" in registry
        with pytest.raises(KeyError):
            registry.message("Missing")

    def test_identical_redefinition_is_a_no_op(self) -> None:
        registry = SchemaRegistry()
        first = registry.define_message(hello(GREETING))
        assert registry.define_message(hello(GREETING)) is first

    def test_compatible_revision_adds_fields(self) -> None:
        registry = SchemaRegistry()
        registry.define_message(hello(GREETING))
        revised = registry.define_message(hello(GREETING, FieldDefinition(2, "name", "string")))
        assert revised.revision == 2
        assert registry.message("HelloRequest").by_number(2).name == "name"

    def test_changing_field_type_conflicts(self) -> None:
        registry = SchemaRegistry()
        registry.define_message(hello(GREETING))
        with pytest.raises(SchemaConflict, match="field number 1"):
            registry.define_message(hello(FieldDefinition(1, "greeting", "bytes")))

    def test_renaming_field_conflicts(self) -> None:
        registry = SchemaRegistry()
        registry.define_message(hello(GREETING))
        with pytest.raises(SchemaConflict):
            registry.define_message(hello(FieldDefinition(1, "salutation", "string")))

    def test_dropped_field_number_is_never_reused(self) -> None:
        """A number retired in one revision cannot come back as something else."""
        registry = SchemaRegistry()
        registry.define_message(hello(GREETING, FieldDefinition(2, "name", "string")))
        registry.define_message(hello(GREETING))
        with pytest.raises(SchemaConflict, match="field number 2"):
            registry.define_message(hello(GREETING, FieldDefinition(2, "age", "int32")))

    def test_dropped_field_may_return_unchanged(self) -> None:
        registry = SchemaRegistry()
        registry.define_message(hello(GREETING, FieldDefinition(2, "name", "string")))
        registry.define_message(hello(GREETING))
        revised = registry.define_message(hello(GREETING, FieldDefinition(2, "name", "string")))
        assert revised.revision == 3

    def test_unknown_field_type(self) -> None:
        registry = SchemaRegistry()
        with pytest.raises(SchemaConflict, match="unknown field type"):
            registry.define_message(hello(FieldDefinition(1, "reply", "HelloReply")))

    def test_self_referencing_message(self) -> None:
        registry = SchemaRegistry()
        node = MessageSchema("Node", (FieldDefinition(1, "children", "Node", repeated=True),))
        assert registry.define_message(node) is registry.message("Node")

    def test_service_requires_known_messages(self) -> None:
        registry = SchemaRegistry()
        service = ServiceDefinition("Greeter", (MethodDefinition("SayHello", "HelloRequest", "HelloReply"),))
        with pytest.raises(SchemaConflict, match="unknown message type"):
            registry.define_service(service)

    def test_service_revision_rules(self) -> None:
        registry = SchemaRegistry()
        registry.define_message(hello(GREETING))
        registry.define_message(hello(GREETING, name="HelloReply"))
        say_hello = MethodDefinition("SayHello", "HelloRequest", "HelloReply")
        first = registry.define_service(ServiceDefinition("Greeter", (say_hello,)))
        assert registry.define_service(ServiceDefinition("Greeter", (say_hello,))) is first

        # Adding a method is a compatible revision.
        wave = MethodDefinition("Wave", "HelloRequest", "HelloRequest")
        revised = registry.define_service(ServiceDefinition("Greeter", (say_hello, wave)))
        assert registry.service("Greeter") is revised

        # Changing a signature is not.
        changed = MethodDefinition("SayHello", "HelloRequest", "HelloRequest")
        with pytest.raises(SchemaConflict, match="signature changed"):
            registry.define_service(ServiceDefinition("Greeter", (changed,)))

    def test_define_dispatches_on_kind(self) -> None:
        registry = SchemaRegistry()
        registry.define(hello(GREETING))
        registry.define(ServiceDefinition("Greeter", (MethodDefinition("Echo", "HelloRequest", "HelloRequest"),)))
        assert registry.messages == ("HelloRequest",)
        assert registry.services == ("Greeter",)
