from django.urls import path

from ramp.views import (
    ChallengeView,
    LiquidityView,
    OfframpCancelView,
    OfframpConfirmView,
    OfframpOrderDetailView,
    OfframpOrderView,
    OfframpRateView,
    OfframpWebhookView,
    OnrampCancelView,
    OnrampOrderDetailView,
    OnrampOrderView,
    OnrampRateView,
    OnrampWebhookView,
    TransferView,
    VerifyChallengeView,
)

app_name = 'ramp'

urlpatterns = [
    path('onramp/rate', OnrampRateView.as_view(), name='onramp-rate'),
    path('onramp/orders', OnrampOrderView.as_view(), name='onramp-orders'),
    path('onramp/orders/<str:reference>', OnrampOrderDetailView.as_view(), name='onramp-order'),
    path('onramp/orders/<str:reference>/cancel', OnrampCancelView.as_view(), name='onramp-cancel'),
    path('onramp/webhook', OnrampWebhookView.as_view(), name='onramp-webhook'),
    path('offramp/rate', OfframpRateView.as_view(), name='offramp-rate'),
    path('offramp/orders', OfframpOrderView.as_view(), name='offramp-orders'),
    path('offramp/orders/<str:reference>', OfframpOrderDetailView.as_view(), name='offramp-order'),
    path('offramp/orders/<str:reference>/confirm', OfframpConfirmView.as_view(), name='offramp-confirm'),
    path('offramp/orders/<str:reference>/cancel', OfframpCancelView.as_view(), name='offramp-cancel'),
    path('offramp/webhook', OfframpWebhookView.as_view(), name='offramp-webhook'),
    path('authorization/challenge', ChallengeView.as_view(), name='authorization-challenge'),
    path('authorization/verify', VerifyChallengeView.as_view(), name='authorization-verify'),
    path('transfers', TransferView.as_view(), name='transfers'),
    path('liquidity', LiquidityView.as_view(), name='liquidity'),
]
