"""Tests for the Go directive scanner."""

from __future__ import annotations

import pytest

from autoscope.errors import ScanError
from tests._fixtures.sources import diagnostics, functions, make_source, scan_text
from autoscope.scanners import scanner_for


def test_directive_above_function_yields_entry_named_by_package() -> None:
    items = scan_text(
        "internal/billing/checkout.go",
        """
        package billing

        import "context"

        //autometrics:inst
        func Checkout(ctx context.Context, cart Cart) error {
        	return nil
        }
        """,
    )

    [entry] = functions(items)
    assert entry.qualified_name == "billing.Checkout"
    assert entry.module == "billing"
    assert entry.language == "go"
    assert entry.line_start == 6
    assert entry.line_end == 8


def test_receiver_type_joins_the_chain_and_flags_are_parsed() -> None:
    [entry] = functions(
        scan_text(
            "orders.go",
            """
            package orders

            //autometrics:doc --metric-name=order_ops --track-concurrency
            // PlaceOrder stores an order.
            func (s *Service) PlaceOrder(o Order) (ID, error) {
            	return s.store.Put(o)
            }
            """,
        )
    )

    assert entry.qualified_name == "orders.Service.PlaceOrder"
    assert entry.metric_names == (
        "order_ops_total",
        "order_ops_duration_seconds",
        "order_ops_concurrent",
    )


def test_space_separated_metric_name_flag() -> None:
    [entry] = functions(
        scan_text(
            "jobs.go",
            """
            package jobs

            //autometrics:inst --metric-name "Nightly Run"
            func Nightly[T any](items []T) {
            }
            """,
        )
    )
    assert entry.metric_names[0] == "nightly_run_total"


def test_directive_not_followed_by_func_is_a_marker_error() -> None:
    items = scan_text(
        "vars.go",
        """
        package vars

        //autometrics:inst
        var counter = 0

        //autometrics:inst
        func Increment() {
        	counter++
        }
        """,
    )

    assert [entry.qualified_name for entry in functions(items)] == ["vars.Increment"]
    [diagnostic] = diagnostics(items)
    assert diagnostic.code == "marker-error"
    assert diagnostic.line == 3


def test_missing_flag_value_is_a_marker_error() -> None:
    items = scan_text(
        "flags.go",
        """
        package flags

        //autometrics:inst --metric-name
        func Parse() {}
        """,
    )
    assert functions(items) == []
    assert "requires a value" in diagnostics(items)[0].message


def test_file_without_package_clause_raises_scan_error() -> None:
    source = make_source("broken.go", "func main() {}\n")
    with pytest.raises(ScanError, match="package"):
        list(scanner_for("go").scan(source))


def test_directive_text_inside_a_raw_string_is_not_a_marker() -> None:
    items = scan_text(
        "templates.go",
        """
        package templates

        const scaffold = `
        //autometrics:inst
        func Generated() {}
        `

        //autometrics:inst
        func Render() string {
        	return scaffold
        }
        """,
    )

    assert [entry.qualified_name for entry in functions(items)] == ["templates.Render"]
    assert diagnostics(items) == []
