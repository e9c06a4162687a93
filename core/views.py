from django.db import DatabaseError, connection
from django.http import HttpResponse, JsonResponse
from loguru import logger

HOME_PAGE_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8" />
<meta name="viewport" content="width=device-width, initial-scale=1" />
<title>Ramp Settlement</title>
<style>
    :root {
        font-family: "Inter", -apple-system, BlinkMacSystemFont, "Segoe UI", sans-serif;
        color: #0f172a;
        background: #f8fafc;
    }
    body {
        margin: 0;
        min-height: 100vh;
        display: flex;
        align-items: center;
        justify-content: center;
    }
    main {
        width: min(880px, 92vw);
        padding: 2.5rem 3rem;
        border-radius: 24px;
        background: #ffffff;
        border: 1px solid rgba(15, 23, 42, 0.08);
    }
    h1 {
        margin: 0 0 0.75rem;
    }
    .routes {
        display: grid;
        grid-template-columns: repeat(auto-fit, minmax(240px, 1fr));
        gap: 1rem;
        margin-top: 1.5rem;
    }
    .route {
        padding: 1rem 1.25rem;
        border-radius: 14px;
        background: #f1f5f9;
    }
    .route h2 {
        margin: 0 0 0.35rem;
        font-size: 0.9rem;
        text-transform: uppercase;
        letter-spacing: 0.08em;
        color: #475569;
    }
    code {
        font-size: 0.9rem;
    }
</style>
</head>
<body>
    <main>
        <h1>Ramp Settlement</h1>
        <p>
            Naira in, USDC out, and back again. Orders are quoted against a live rate, checked
            against the custodial pool, and settled once the payment rail confirms.
        </p>
        <div class="routes">
            <div class="route">
                <h2>Onramp</h2>
                <p>Quote, create an order, pay at checkout, receive USDC.</p>
                <code>POST /api/onramp/orders</code>
            </div>
            <div class="route">
                <h2>Offramp</h2>
                <p>Deposit USDC, confirm with a passkey, receive a bank payout.</p>
                <code>POST /api/offramp/orders</code>
            </div>
            <div class="route">
                <h2>Send</h2>
                <p>Move USDC to another user or address after passkey approval.</p>
                <code>POST /api/transfers</code>
            </div>
        </div>
    </main>
</body>
</html>"""


def home(request):
    return HttpResponse(HOME_PAGE_HTML, content_type="text/html; charset=utf-8")


def health(request):
    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
    except DatabaseError as exc:
        logger.error("Health check database probe failed: {}", exc)
        return JsonResponse({"status": "degraded", "database": "unavailable"}, status=503)
    return JsonResponse({"status": "ok"})
