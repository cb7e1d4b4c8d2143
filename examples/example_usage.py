import asyncio
from datetime import date

from google.cloud import bigquery

from bqinsights import (
    AnalyticsClient,
    DateRange,
    FunnelStep,
    InMemoryCache,
    MetricSpec,
    PathConfig,
    RetentionConfig,
    SchemaConfig,
    TrendCombination,
)

TABLE_ID = "bigquery-public-data.ga4_obfuscated_sample_ecommerce.events_*"
TZ = "America/Los_Angeles"
NOVEMBER = DateRange(date(2020, 11, 1), date(2020, 11, 7))


async def main() -> None:
    schema = SchemaConfig(table_id=TABLE_ID, tz=TZ)
    ga = AnalyticsClient(schema, client=bigquery.Client(), cache=InMemoryCache())

    breakdown = await ga.compute_trend_breakdown(
        TrendCombination("page_view"), NOVEMBER, "platform"
    )
    for segment in breakdown[0]:
        print(segment.segment_name, segment.total)

    steps = [FunnelStep("view_item"), FunnelStep("add_to_cart"), FunnelStep("purchase")]
    funnel = await ga.compute_funnel(steps, NOVEMBER, metric=MetricSpec("unique_entities"))
    for step in funnel:
        print(f"{step.step_name}: {step.metric_value:.0f} ({step.conversion_rate:.1f}%)")

    retention = await ga.compute_average_retention(
        RetentionConfig("first_visit", "session_start", NOVEMBER, retention_periods=(1, 3))
    )
    print(retention)

    paths = await ga.compute_paths(PathConfig(start_event="view_item", date_range=NOVEMBER))
    for sequence in paths.sequences[:5]:
        print(" -> ".join(sequence.sequence), sequence.count)


if __name__ == "__main__":
    asyncio.run(main())
