"""Dashboard HTML for a portal session."""

from html import escape
from typing import List

from .models import SessionStatus, TunnelEvent


def _status_badge(status: SessionStatus) -> str:
    if status.running:
        return '<span class="badge up">forwarding</span>'
    if status.returncode is not None:
        return f'<span class="badge down">exited ({status.returncode})</span>'
    return '<span class="badge idle">not started</span>'


def generate_dashboard_html(status: SessionStatus, events: List[TunnelEvent]) -> str:
    """Generate the dashboard page for a session and its recent output."""
    endpoint = status.endpoint
    if endpoint:
        endpoint_rows = f"""
            <tr><th>Task</th><td><code>{escape(endpoint.task_arn)}</code></td></tr>
            <tr><th>EC2 Instance</th><td><code>{escape(endpoint.ec2_instance_id)}</code></td></tr>
            <tr><th>Host Port</th><td>{endpoint.host_port}</td></tr>
            <tr><th>Container Port</th><td>{endpoint.container_port}</td></tr>"""
    else:
        endpoint_rows = '<tr><td colspan="2">No endpoint selected.</td></tr>'

    event_lines = "\n".join(
        f'<div class="line {event.channel}">'
        f'<span class="ts">{event.received_at.strftime("%H:%M:%S")}</span> {escape(event.line)}</div>'
        for event in events
    ) or '<div class="line">No output yet.</div>'

    stream_note = ""
    if status.stream_closed:
        stream_note = f'<p class="note">Event stream closed: {escape(status.close_reason or "unknown")}</p>'

    html = f"""
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <meta http-equiv="refresh" content="5">
    <title>Portal Gun - {escape(status.service)}</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            background: #0f172a;
            color: #e2e8f0;
            padding: 20px;
        }}

        .container {{
            max-width: 1000px;
            margin: 0 auto;
        }}

        h1 {{
            font-size: 2rem;
            margin-bottom: 4px;
        }}

        .subtitle {{
            color: #94a3b8;
            margin-bottom: 20px;
        }}

        .card {{
            background: #1e293b;
            border-radius: 10px;
            padding: 20px;
            margin-bottom: 20px;
        }}

        table {{
            border-collapse: collapse;
            width: 100%;
        }}

        th {{
            text-align: left;
            color: #94a3b8;
            width: 180px;
            padding: 6px 0;
        }}

        .badge {{
            padding: 3px 10px;
            border-radius: 12px;
            font-size: 0.85rem;
        }}

        .badge.up {{ background: #166534; }}
        .badge.down {{ background: #991b1b; }}
        .badge.idle {{ background: #475569; }}

        .log {{
            font-family: 'SF Mono', Menlo, monospace;
            font-size: 0.85rem;
            max-height: 400px;
            overflow-y: auto;
        }}

        .line.stderr {{ color: #fca5a5; }}
        .ts {{ color: #64748b; }}
        .note {{ color: #fbbf24; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Portal Gun {_status_badge(status)}</h1>
        <div class="subtitle">{escape(status.service)} on {escape(status.cluster)} &rarr; 127.0.0.1:{status.forward_port or "-"}</div>
        <div class="card">
            <table>{endpoint_rows}
            </table>
        </div>
        <div class="card">
            <h2>Forwarding agent output</h2>
            {stream_note}
            <div class="log">
{event_lines}
            </div>
        </div>
    </div>
</body>
</html>
"""
    return html
