"""
tools/catalog.py — The DigitalSE Tool Catalog

The ten capabilities the agent may route to, with their input schemas,
side-effect classes, execution bindings and static cost estimates.
Built once at startup; config may override the cost estimates.
"""

from __future__ import annotations

from typing import Iterable, Optional

from digitalse.exceptions import ConfigurationError
from digitalse.tools.registry import ToolRegistry
from digitalse.tools.types import (
    BindingKind,
    CostEstimate,
    EvidenceSource,
    ExecutionBinding,
    ParameterSpec,
    SideEffect,
    ToolDescriptor,
)

# Tool names, as the router and the tests refer to them
DOCUMENTATION_SEARCH = "SNOWFLAKE_DOCUMENTATION"
USAGE_ANALYST = "AccountUsageAnalyst"
QUERY_DATA_FETCHER = "QueryDataFetcher"
QUERY_TEXT_FETCHER = "QueryTextFetcher"
FIELD_DEFINITIONS = "FieldDefinitions"
ANALYSIS_GUIDANCE = "AnalysisGuidance"
GEN2_BENCHMARK = "Gen2BenchmarkLookup"
GET_OBJECT_DDL = "GetObjectDDL"
EXECUTE_DDL = "ExecuteDDL"
EXECUTE_DML = "ExecuteDML"

ALL_TOOL_NAMES = (
    DOCUMENTATION_SEARCH,
    USAGE_ANALYST,
    QUERY_DATA_FETCHER,
    QUERY_TEXT_FETCHER,
    FIELD_DEFINITIONS,
    ANALYSIS_GUIDANCE,
    GEN2_BENCHMARK,
    GET_OBJECT_DDL,
    EXECUTE_DDL,
    EXECUTE_DML,
)


def _procedure(identifier: str, warehouse: str) -> ExecutionBinding:
    return ExecutionBinding(kind=BindingKind.PROCEDURE, identifier=identifier, warehouse=warehouse)


def default_descriptors(settings=None) -> list[ToolDescriptor]:
    """
    Return the catalog as descriptors.

    Args:
        settings: Optional Settings. Supplies the warehouse, search service,
                  semantic view and per-tool cost overrides.
    """
    sf = settings.snowflake if settings is not None else None
    warehouse = sf.warehouse if sf else "DIGITALSE_WH"
    docs_service = sf.documentation_service if sf else \
        "SNOWFLAKE_DOCUMENTATION.SHARED.CKE_SNOWFLAKE_DOCS_SERVICE"
    max_results = sf.documentation_max_results if sf else 5
    semantic_view = sf.semantic_view if sf else "DIGITALSE.PUBLIC.ACCOUNT_USAGE_SEMANTIC_VIEW"

    descriptors = [
        ToolDescriptor(
            name=DOCUMENTATION_SEARCH,
            description=(
                "Searches the official Snowflake documentation: features, SQL syntax "
                "and functions, best practices, configuration parameters, "
                "optimization techniques, new releases, security and governance."
            ),
            input_schema={
                "query": ParameterSpec(type="string", required=True,
                                       description="Search text"),
                "columns": ParameterSpec(type="array",
                                         description="Result columns to return"),
                "limit": ParameterSpec(type="integer",
                                       description="Maximum number of chunks"),
            },
            side_effect=SideEffect.READ,
            binding=ExecutionBinding(
                kind=BindingKind.CORTEX_SEARCH,
                identifier=docs_service,
                options={
                    "columns": ["CHUNK", "DOCUMENT_TITLE", "SOURCE_URL"],
                    "max_results": max_results,
                },
            ),
            source=EvidenceSource.DOCUMENTATION,
            cost=CostEstimate(seconds=3.0, tokens=1500, max_seconds=15.0),
        ),
        ToolDescriptor(
            name=USAGE_ANALYST,
            description=(
                "Text-to-SQL analyst over ACCOUNT_USAGE: query history, credit "
                "attribution, query insights, query acceleration eligibility, "
                "table and column pruning history, warehouse load. Finds "
                "expensive queries, users, warehouses and tables."
            ),
            input_schema={
                "question": ParameterSpec(type="string", required=True,
                                          description="Analytic question in natural language"),
            },
            side_effect=SideEffect.READ,
            binding=ExecutionBinding(
                kind=BindingKind.CORTEX_ANALYST,
                identifier=semantic_view,
                warehouse=warehouse,
            ),
            source=EvidenceSource.WORKLOAD,
            cost=CostEstimate(seconds=15.0, tokens=4000, max_seconds=45.0),
        ),
        ToolDescriptor(
            name=QUERY_TEXT_FETCHER,
            description=(
                "Retrieves query text and execution metadata for a query id: "
                "formatted SQL, user and role, warehouse size, query load percentage."
            ),
            input_schema={
                "query_id": ParameterSpec(type="string", required=True,
                                          description="The query ID to retrieve"),
            },
            side_effect=SideEffect.READ,
            binding=_procedure("DIGITALSE.TOOLS.QUERY_TEXT", warehouse),
            source=EvidenceSource.WORKLOAD,
            cost=CostEstimate(seconds=4.0, tokens=1500, max_seconds=20.0),
        ),
        ToolDescriptor(
            name=QUERY_DATA_FETCHER,
            description=(
                "Fetches detailed query operator statistics for a query id: "
                "execution plan, operator rows and bytes, cache hit rates, "
                "partition pruning, spilling, join explosion, bottlenecks."
            ),
            input_schema={
                "query_id": ParameterSpec(type="string", required=True,
                                          description="The query ID to analyze"),
                "output_format": ParameterSpec(type="string",
                                               description="'pretty' or 'minified'"),
            },
            side_effect=SideEffect.READ,
            binding=_procedure("DIGITALSE.QUERY_DEMO.QUERY_DATA_FETCHER", warehouse),
            source=EvidenceSource.WORKLOAD,
            cost=CostEstimate(seconds=6.0, tokens=3000, max_seconds=30.0),
        ),
        ToolDescriptor(
            name=FIELD_DEFINITIONS,
            description=(
                "Reference field definitions for query operator statistics: "
                "OPERATOR_STATISTICS, EXECUTION_TIME_BREAKDOWN, OPERATOR_TYPE."
            ),
            side_effect=SideEffect.READ,
            binding=_procedure("DIGITALSE.QUERY_DEMO.FIELD_DEFINITIONS", warehouse),
            source=EvidenceSource.REFERENCE,
            cacheable=True,
            cost=CostEstimate(seconds=2.0, tokens=1200, max_seconds=15.0),
        ),
        ToolDescriptor(
            name=ANALYSIS_GUIDANCE,
            description=(
                "Performance threshold guidance: execution time grades, table scan "
                "efficiency, join row multiplication, spilling severity."
            ),
            side_effect=SideEffect.READ,
            binding=_procedure("DIGITALSE.QUERY_DEMO.ANALYSIS_GUIDANCE", warehouse),
            source=EvidenceSource.REFERENCE,
            cacheable=True,
            cost=CostEstimate(seconds=2.0, tokens=1000, max_seconds=15.0),
        ),
        ToolDescriptor(
            name=GEN2_BENCHMARK,
            description=(
                "Estimates Gen2 warehouse speedup for a description of query "
                "operations: table scans, joins, DML, semi-structured data, "
                "window functions."
            ),
            input_schema={
                "QUERY_DESC_INPUT": ParameterSpec(
                    type="string", required=True,
                    description="Description of query operations",
                ),
            },
            side_effect=SideEffect.READ,
            binding=ExecutionBinding(
                kind=BindingKind.FUNCTION,
                identifier="DIGITALSE.BENCHMARK.FN_BENCHMARK_LOOKUP_BY_QUERY",
                warehouse=warehouse,
            ),
            source=EvidenceSource.BENCHMARK,
            cost=CostEstimate(seconds=5.0, tokens=2000, max_seconds=20.0),
        ),
        ToolDescriptor(
            name=GET_OBJECT_DDL,
            description=(
                "Extracts the DDL definition and structure of a Snowflake object: "
                "table, view, schema, database, function, procedure, warehouse, "
                "dynamic table, stream, task, pipe."
            ),
            input_schema={
                "object_type": ParameterSpec(type="string", required=True,
                                             description="TABLE, VIEW, FUNCTION, ..."),
                "object_name": ParameterSpec(type="string", required=True,
                                             description="Fully qualified object name"),
                "use_fully_qualified_names": ParameterSpec(
                    type="boolean",
                    description="Use fully qualified names in DDL output",
                ),
            },
            side_effect=SideEffect.READ,
            binding=_procedure("DIGITALSE.TOOLS.GET_OBJECT_DDL", warehouse),
            source=EvidenceSource.WORKLOAD,
            cost=CostEstimate(seconds=3.0, tokens=1000, max_seconds=20.0),
        ),
        ToolDescriptor(
            name=EXECUTE_DDL,
            description=(
                "Executes DDL statements: CREATE, ALTER, DROP, TRUNCATE, SHOW, "
                "DESCRIBE, GRANT. Drop and truncate are destructive."
            ),
            input_schema={
                "ddl_statement": ParameterSpec(type="string", required=True,
                                               description="DDL statement to execute"),
                "output_format": ParameterSpec(type="string",
                                               description="'pretty', 'minified' or 'table'"),
            },
            side_effect=SideEffect.DESTRUCTIVE,
            binding=_procedure("DIGITALSE.TOOLS.EXECUTE_DDL", warehouse),
            source=EvidenceSource.WORKLOAD,
            cost=CostEstimate(seconds=10.0, tokens=800, max_seconds=45.0),
        ),
        ToolDescriptor(
            name=EXECUTE_DML,
            description=(
                "Executes DML statements: SELECT, INSERT, UPDATE, DELETE, MERGE."
            ),
            input_schema={
                "dml_statement": ParameterSpec(type="string", required=True,
                                               description="DML statement to execute"),
                "output_format": ParameterSpec(type="string",
                                               description="'table', 'json' or 'summary'"),
            },
            side_effect=SideEffect.WRITE,
            binding=_procedure("DIGITALSE.TOOLS.EXECUTE_DML", warehouse),
            source=EvidenceSource.WORKLOAD,
            cost=CostEstimate(seconds=15.0, tokens=3000, max_seconds=45.0),
        ),
    ]

    if settings is not None and settings.costs.tools:
        descriptors = [_apply_cost_override(d, settings.costs.tools.get(d.name)) for d in descriptors]
    return descriptors


def _apply_cost_override(descriptor: ToolDescriptor, override) -> ToolDescriptor:
    if override is None:
        return descriptor
    cost = descriptor.cost.model_copy(update={
        k: v for k, v in override.model_dump().items() if v is not None
    })
    return descriptor.model_copy(update={"cost": cost})


def build_registry(settings=None, extra: Optional[Iterable[ToolDescriptor]] = None) -> ToolRegistry:
    """Build the frozen registry and check that every routed tool is present."""
    descriptors = default_descriptors(settings)
    if extra:
        descriptors.extend(extra)
    registry = ToolRegistry.from_descriptors(descriptors)
    check_catalog(registry)
    return registry


def check_catalog(registry: ToolRegistry, required: Iterable[str] = ALL_TOOL_NAMES) -> None:
    """Raise ConfigurationError if a tool the router depends on is missing."""
    missing = [name for name in required if not registry.is_registered(name)]
    if missing:
        raise ConfigurationError(
            f"Tool catalog is incomplete; missing required tools: {missing}"
        )
