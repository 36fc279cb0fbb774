# src/services/realtime_ws/__init__.py
"""
Живой канал ядра диспетчеризации.

Обеспечивает:
- WebSocket сессии клиентов (пользователи, механики, администраторы)
- Входящие механика и пользователя, комнаты заявок
- Переигрывание пропущенных событий из журнала по seq
- Трансляцию позиции механика
"""
