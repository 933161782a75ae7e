from django.urls import path

from purchasing.views import (
    purchase_order_approve,
    purchase_order_backorder,
    purchase_order_cancel,
    purchase_order_deactivate,
    purchase_order_get,
    purchase_order_issue,
    purchase_order_list,
    purchase_order_receive,
    purchase_order_reject,
    purchase_order_resubmit,
    purchase_order_returnable,
    return_approve,
    return_detail,
    return_eligible_orders,
    return_list,
    return_reject,
    return_resubmit,
)

urlpatterns = [
    path("purchase-orders/", purchase_order_list, name="purchase_order_list"),
    path("purchase-orders/<int:purchase_order_id>/", purchase_order_get, name="purchase_order_get"),
    path(
        "purchase-orders/<int:purchase_order_id>/approve/",
        purchase_order_approve,
        name="purchase_order_approve",
    ),
    path(
        "purchase-orders/<int:purchase_order_id>/reject/",
        purchase_order_reject,
        name="purchase_order_reject",
    ),
    path(
        "purchase-orders/<int:purchase_order_id>/resubmit/",
        purchase_order_resubmit,
        name="purchase_order_resubmit",
    ),
    path(
        "purchase-orders/<int:purchase_order_id>/issue/",
        purchase_order_issue,
        name="purchase_order_issue",
    ),
    path(
        "purchase-orders/<int:purchase_order_id>/receive/",
        purchase_order_receive,
        name="purchase_order_receive",
    ),
    path(
        "purchase-orders/<int:purchase_order_id>/cancel/",
        purchase_order_cancel,
        name="purchase_order_cancel",
    ),
    path(
        "purchase-orders/<int:purchase_order_id>/backorder/",
        purchase_order_backorder,
        name="purchase_order_backorder",
    ),
    path(
        "purchase-orders/<int:purchase_order_id>/deactivate/",
        purchase_order_deactivate,
        name="purchase_order_deactivate",
    ),
    path(
        "purchase-orders/<int:purchase_order_id>/returnable/",
        purchase_order_returnable,
        name="purchase_order_returnable",
    ),
    path("returns/", return_list, name="return_list"),
    path("returns/eligible-orders/", return_eligible_orders, name="return_eligible_orders"),
    path("returns/<int:return_request_id>/", return_detail, name="return_detail"),
    path("returns/<int:return_request_id>/resubmit/", return_resubmit, name="return_resubmit"),
    path("returns/<int:return_request_id>/approve/", return_approve, name="return_approve"),
    path("returns/<int:return_request_id>/reject/", return_reject, name="return_reject"),
]
