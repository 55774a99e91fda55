from django.urls import path

from . import views

app_name = "audit"
urlpatterns = [
    path("auditoria/actor/<int:actor_id>", views.actor_history_view, name="actor_history"),
    path("auditoria/<str:table>/<str:entity_id>", views.entity_history_view, name="entity_history"),
]
