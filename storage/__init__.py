"""storage package"""
