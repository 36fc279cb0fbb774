# src/core/__init__.py
"""
Доменный слой ядра диспетчеризации.
Присутствие механиков, гео-поиск, жизненный цикл заявок, диспетчер, регулятор ёмкости.
"""
