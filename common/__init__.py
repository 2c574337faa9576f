"""Configuración y logging compartidos por el conector."""
