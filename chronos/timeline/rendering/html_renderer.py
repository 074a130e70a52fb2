"""
HTML Renderer
=============

Writes a finalized timeline as one standalone HTML page: a run summary, the
per-parser counts of the RunReport, activity per day, and the event table.

The table is emitted in exactly the order it is given. Clicking a column
header sorts the rows in the browser; ties keep their timeline order.

Author: Chronos Development
Version: 1.0
"""

import logging
import os
from typing import Dict, List, Sequence

from jinja2 import Environment

from chronos import __version__
from chronos.styles import ReportStyles
from chronos.timeline.data.event_aggregator import bucket_events
from chronos.timeline.data.run_report import RunReport
from chronos.timeline.data.timeline_event import TimelineEvent
from chronos.utils.error_handler import IoError
from chronos.utils.time_utils import format_timestamp, get_current_utc

logger = logging.getLogger(__name__)

REPORT_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Chronos Timeline - {{ image_name }}</title>
<style>{{ stylesheet|safe }}</style>
</head>
<body>
<div class="container">
  <h1>Chronos Timeline</h1>

  <div class="card">
    <div><span class="muted">Image:</span> {{ report.image_path }}{% if report.container_kind %} <span class="muted">({{ report.container_kind }})</span>{% endif %}</div>
    <div><span class="muted">Events:</span> <span class="count">{{ events|length }}</span></div>
    <div><span class="muted">Time span:</span> {{ first_ts or 'n/a' }} &rarr; {{ last_ts or 'n/a' }}</div>
    <div class="muted">Generated {{ generated }} by Chronos {{ version }}{% if report.elapsed_seconds %} in {{ '%.2f'|format(report.elapsed_seconds) }}s{% endif %}</div>
  </div>

  <div class="card">
    <h2>Run Report</h2>
    <table>
      <thead><tr><th>Parser</th><th>Records seen</th><th>Events</th><th>Skipped</th><th>Status</th></tr></thead>
      <tbody>
      {% for parser in report.parsers %}
        <tr>
          <td>{{ parser.name }}</td>
          <td>{{ parser.records_seen }}</td>
          <td>{{ parser.events_emitted }}</td>
          <td>{{ parser.records_skipped }}{% if parser.skipped %} <span class="muted">({% for reason, count in parser.skipped|dictsort %}{{ reason }}={{ count }}{% if not loop.last %}, {% endif %}{% endfor %})</span>{% endif %}</td>
          <td>{% if parser.failed %}<span class="failed">failed: {{ parser.failure }}</span>{% elif parser.capped %}<span class="note">stopped at processing cap</span>{% else %}ok{% endif %}</td>
        </tr>
      {% endfor %}
      </tbody>
    </table>
    {% for note in report.notes %}
      <div class="note">{{ note }}</div>
    {% endfor %}
  </div>

  {% if activity %}
  <div class="card">
    <h2>Activity per {{ activity[0].bucket_size }}</h2>
    <table>
      <thead><tr><th>{{ activity[0].bucket_size|capitalize }} (UTC)</th>{% for label in source_labels %}<th>{{ label }}</th>{% endfor %}<th>Total</th></tr></thead>
      <tbody>
      {% for bucket in activity %}
        <tr>
          <td class="timestamp">{{ bucket.time_bucket.strftime('%Y-%m-%d %H:%M') }}</td>
          {% for label in source_labels %}<td>{{ bucket.counts_by_source.get(label, 0) }}</td>{% endfor %}
          <td class="count">{{ bucket.total_count }}</td>
        </tr>
      {% endfor %}
      </tbody>
    </table>
  </div>
  {% endif %}

  <div class="card">
    <h2>Events</h2>
    <input id="filter" type="search" placeholder="Filter rows...">
    <table id="timeline">
      <thead>
        <tr>
          <th data-type="text">Timestamp (UTC)</th>
          {% if local_timezone %}<th data-type="text">Timestamp ({{ local_timezone }})</th>{% endif %}
          <th data-type="text">Event Type</th>
          <th data-type="text">Description</th>
          <th data-type="text">Source Artifact</th>
        </tr>
      </thead>
      <tbody>
      {% for row in rows %}
        <tr>
          <td class="timestamp" data-key="{{ row.key }}">{{ row.timestamp }}</td>
          {% if local_timezone %}<td class="timestamp" data-key="{{ row.key }}">{{ row.local }}</td>{% endif %}
          <td>{{ row.event_type }}</td>
          <td>{{ row.description }}</td>
          <td class="{{ row.source_class }}" title="{{ row.source_ref }}">{{ row.source }}</td>
        </tr>
      {% endfor %}
      </tbody>
    </table>
  </div>
</div>
<script>
(function () {
  var table = document.getElementById('timeline');
  var body = table.tBodies[0];
  var rows = Array.prototype.slice.call(body.rows);
  var state = {column: -1, ascending: true};
  rows.forEach(function (row, index) { row.setAttribute('data-index', index); });

  function cellKey(row, column) {
    var cell = row.cells[column];
    return cell.getAttribute('data-key') || cell.textContent;
  }

  Array.prototype.forEach.call(table.tHead.rows[0].cells, function (header, column) {
    header.addEventListener('click', function () {
      state.ascending = state.column === column ? !state.ascending : true;
      state.column = column;
      var ordered = rows.slice().sort(function (a, b) {
        var x = cellKey(a, column), y = cellKey(b, column);
        var result = x < y ? -1 : (x > y ? 1 : a.getAttribute('data-index') - b.getAttribute('data-index'));
        return state.ascending ? result : -result;
      });
      ordered.forEach(function (row) { body.appendChild(row); });
    });
  });

  document.getElementById('filter').addEventListener('input', function () {
    var needle = this.value.toLowerCase();
    rows.forEach(function (row) {
      row.style.display = row.textContent.toLowerCase().indexOf(needle) === -1 ? 'none' : '';
    });
  });
})();
</script>
</body>
</html>
"""

_ENVIRONMENT = Environment(autoescape=True)


def build_rows(events: Sequence[TimelineEvent], timezone: str = 'UTC') -> List[Dict[str, str]]:
    """
    Turn events into display rows, keeping their order.

    The row key is the zero-padded FILETIME so that sorting the rendered
    column as text is chronological.
    """
    local = timezone.upper() != 'UTC'
    rows = []
    for event in events:
        rows.append({
            'key': f"{event.timestamp.to_filetime():020d}",
            'timestamp': event.timestamp.isoformat(),
            'local': format_timestamp(event.timestamp, timezone) if local else '',
            'event_type': event.event_type.label,
            'description': event.description,
            'source': event.source.value,
            'source_class': 'source-' + event.source.value.lower().replace(' ', '-'),
            'source_ref': event.source_ref,
        })
    return rows


def render_html_string(events: Sequence[TimelineEvent], report: RunReport, timezone: str = 'UTC') -> str:
    """Render the report page and return it as a string"""
    local_timezone = None if timezone.upper() == 'UTC' else timezone
    activity = bucket_events(events, 'day')
    source_labels = sorted({label for bucket in activity for label in bucket['counts_by_source']})

    template = _ENVIRONMENT.from_string(REPORT_TEMPLATE)
    return template.render(
        image_name=os.path.basename(report.image_path) or 'image',
        stylesheet=ReportStyles.stylesheet(),
        report=report,
        events=events,
        rows=build_rows(events, timezone),
        first_ts=events[0].timestamp.isoformat() if events else None,
        last_ts=events[-1].timestamp.isoformat() if events else None,
        activity=activity,
        source_labels=source_labels,
        local_timezone=local_timezone,
        generated=get_current_utc().strftime('%Y-%m-%d %H:%M:%S UTC'),
        version=__version__,
    )


def render_html(events: Sequence[TimelineEvent], report: RunReport, path: str, timezone: str = 'UTC') -> str:
    """
    Write the timeline report to ``path``.

    Args:
        events: Finalized timeline, rendered in the order given
        report: Counts and notes of the run
        path: Output file
        timezone: Display timezone for the extra local-time column ('UTC' for none)

    Returns:
        str: Absolute path of the written report

    Raises:
        IoError: If the report cannot be written
    """
    html = render_html_string(events, report, timezone)

    directory = os.path.dirname(os.path.abspath(path))
    try:
        os.makedirs(directory, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(html)
    except OSError as e:
        raise IoError(f"Cannot write report {path}: {e}")

    logger.info(f"Report written to {path} ({len(events):,} events)")
    return os.path.abspath(path)
