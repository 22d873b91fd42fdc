"""
Dashboard Page
==============
A single self-contained page over the JSON API and the event feed.
"""

from fastapi import APIRouter
from fastapi.responses import HTMLResponse

router = APIRouter()

DASHBOARD_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <title>Tollgate Dashboard</title>
  <style>
    body { font-family: monospace; background: #1a1a2e; color: #e0e0e0; padding: 2rem; }
    h1 { color: #7eb8f7; }
    pre { background: #0d0d1a; padding: 1rem; border-radius: 8px; overflow: auto; }
    .card { margin: 1rem 0; }
  </style>
</head>
<body>
  <h1>Tollgate</h1>
  <div class="card"><h3>Status</h3><pre id="status">Loading...</pre></div>
  <div class="card"><h3>Recent Calls</h3><pre id="calls">Loading...</pre></div>
  <div class="card"><h3>Live Events</h3><pre id="events">Connecting...</pre></div>
  <script>
    async function refresh() {
      const [status, calls] = await Promise.all([
        fetch('/api/status').then(r => r.json()),
        fetch('/api/calls?limit=10').then(r => r.json()),
      ]);
      document.getElementById('status').textContent = JSON.stringify(status, null, 2);
      document.getElementById('calls').textContent = JSON.stringify(calls, null, 2);
    }
    const log = document.getElementById('events');
    const source = new EventSource('/api/events');
    for (const name of ['connected', 'snapshot', 'call', 'alert', 'reset']) {
      source.addEventListener(name, (e) => {
        log.textContent = `${name}: ${e.data}\\n` + log.textContent;
        if (name !== 'connected') refresh();
      });
    }
    refresh();
  </script>
</body>
</html>
"""


@router.get("/", response_class=HTMLResponse, include_in_schema=False)
async def dashboard_page() -> HTMLResponse:
    return HTMLResponse(DASHBOARD_HTML)
