import os
import shutil
from datetime import datetime
from xml.dom import minidom
from xml.etree import ElementTree
from onevizion import Message

NOT_AVAILABLE = 'N/A'
BACKUP_TIMESTAMP_FORMAT = '%Y%m%d-%H%M%S'


class XmlPathError(Exception):
    pass


class CommentedTreeBuilder(ElementTree.TreeBuilder):
    def comment(self, data):
        self.start(ElementTree.Comment, {})
        self.data(data)
        self.end(ElementTree.Comment)


def indent(elem, level=0, unit="    "):
    i = "\n" + level * unit
    if len(elem):
        if not elem.text or not elem.text.strip():
            elem.text = i + unit
        if not elem.tail or not elem.tail.strip():
            elem.tail = i
        for elem in elem:
            indent(elem, level + 1, unit)
        if not elem.tail or not elem.tail.strip():
            elem.tail = i
    else:
        if level and (not elem.tail or not elem.tail.strip()):
            elem.tail = i


def prettify_xml(elem):
    rough_string = ElementTree.tostring(elem, 'utf-8')
    minidom_tree = minidom.parseString(rough_string)
    return minidom_tree.toprettyxml(indent="	")


def load_xml(file_path):
    """Parse XML file keeping comments

    Args:
        file_path (str): Path to XML file

    Returns:
        ElementTree.ElementTree: Parsed document

    """

    parser = ElementTree.XMLParser(target=CommentedTreeBuilder())
    return ElementTree.parse(file_path, parser)


def save_xml(tree, file_path):
    tree.write(file_path, encoding='utf-8', xml_declaration=True)


def backup_file(file_path):
    """Copy file to <name>.<timestamp>.bak in the same directory

    Returns:
        str: Path of the created backup

    """

    timestamp = datetime.now().strftime(BACKUP_TIMESTAMP_FORMAT)
    backup_path = f'{file_path}.{timestamp}.bak'
    shutil.copy2(file_path, backup_path)
    Message(f'Backed up {file_path} to {os.path.basename(backup_path)}')
    return backup_path


def split_path(path):
    return [segment for segment in path.split('/') if segment]


def find_child(node, tag):
    for child in node:
        if child.tag == tag:
            return child
    return None


def ensure_path(tree, path):
    """Walk element path from document element creating missing elements

    First segment names the document element, every next segment the first child
    with that tag. Empty segments are skipped.

    Args:
        tree (ElementTree.ElementTree): Document to walk and extend
        path (str): Slash separated element names, e.g. 'configuration/system.web/httpRuntime'

    Returns:
        ElementTree.Element: Element at the end of the path

    """

    segments = split_path(path)
    root = tree.getroot()

    if root is None:
        if len(segments) == 0:
            raise XmlPathError('Unable to create document element from empty path')
        root = ElementTree.Element(segments[0])
        tree._setroot(root)
        Message(f'Created document element <{root.tag}>', 1)

    if len(segments) == 0:
        return root
    if root.tag != segments[0]:
        raise XmlPathError(f"Path '{path}' does not start with document element <{root.tag}>")

    node = root
    for segment in segments[1:]:
        child = find_child(node, segment)
        if child is None:
            child = ElementTree.SubElement(node, segment)
            Message(f'Created element {element_path(tree, child)}', 1)
        node = child
    return node


def get_attribute(tree, path, attr_name):
    root = tree.getroot()
    segments = split_path(path)
    if root is None or (segments and root.tag != segments[0]):
        return None

    node = root
    for segment in segments[1:]:
        node = find_child(node, segment)
        if node is None:
            return None
    return node.get(attr_name)


def set_attribute(tree, path, attr_name, value):
    """Set attribute on element at path, creating the path when it is missing

    Args:
        tree (ElementTree.ElementTree): Document to change
        path (str): Slash separated element names
        attr_name (str): Attribute name
        value: New value, stored as string

    Returns:
        str: Previous value or None when attribute was not set

    """

    node = ensure_path(tree, path)
    old_value = node.get(attr_name)
    new_value = str(value)
    node.set(attr_name, new_value)

    Message('{path}@{attr_name}: {old_value} -> {new_value}'.format(
        path=element_path(tree, node),
        attr_name=attr_name,
        old_value=old_value if old_value is not None else NOT_AVAILABLE,
        new_value=new_value
    ))
    return old_value


def set_app_setting(tree, key, value, path='configuration/appSettings'):
    """Create or update <add key="..." value="..."/> under appSettings

    Returns:
        str: Previous value or None when the key was not present

    """

    settings_node = ensure_path(tree, path)
    new_value = str(value)

    for add_node in settings_node.findall('add'):
        if add_node.get('key') == key:
            old_value = add_node.get('value')
            add_node.set('value', new_value)
            break
    else:
        old_value = None
        ElementTree.SubElement(settings_node, 'add', {'key': key, 'value': new_value})

    Message('{path}[{key}]: {old_value} -> {new_value}'.format(
        path=element_path(tree, settings_node),
        key=key,
        old_value=old_value if old_value is not None else NOT_AVAILABLE,
        new_value=new_value
    ))
    return old_value


def indent_unit(tree):
    """Indentation step used by the document, taken from the text before the first child"""

    text = tree.getroot().text or ''
    if '\n' in text:
        unit = text.rsplit('\n', 1)[1]
        if unit and not unit.strip():
            return unit
    return '    '


def indent_new_elements(tree, existing_elements):
    """Indent elements added after existing_elements was taken, leaving the rest of the document as is

    Args:
        tree (ElementTree.ElementTree): Changed document
        existing_elements (set): Elements of the document before the change

    """

    parents = {child: parent for parent in tree.iter() for child in parent}
    unit = indent_unit(tree)

    for element in list(tree.iter()):
        parent = parents.get(element)
        if element in existing_elements or parent not in existing_elements:
            continue

        level = 0
        node = element
        while node in parents:
            level += 1
            node = parents[node]

        siblings = list(parent)
        position = siblings.index(element)
        if position == 0:
            if not parent.text or not parent.text.strip():
                parent.text = '\n' + level * unit
        else:
            previous = siblings[position - 1]
            if not previous.tail or not previous.tail.strip():
                previous.tail = '\n' + level * unit

        indent(element, level, unit)
        if position == len(siblings) - 1:
            element.tail = '\n' + (level - 1) * unit


def find_all(tree, path):
    root = tree.getroot()
    segments = split_path(path)
    if root is None or len(segments) == 0 or root.tag != segments[0]:
        return []
    if len(segments) == 1:
        return [root]
    return root.findall('/'.join(segments[1:]))


def set_existing_attributes(tree, path, attr_name, value):
    """Set attribute on every element matching path, never creating elements

    Returns:
        list[tuple]: (element, previous value or None) for every match

    """

    new_value = str(value)
    results = []
    for node in find_all(tree, path):
        old_value = node.get(attr_name)
        node.set(attr_name, new_value)
        Message('{path}@{attr_name}: {old_value} -> {new_value}'.format(
            path=element_path(tree, node),
            attr_name=attr_name,
            old_value=old_value if old_value is not None else NOT_AVAILABLE,
            new_value=new_value
        ))
        results.append((node, old_value))

    if len(results) == 0:
        Message(f'No elements found for {path}, {attr_name} is not set', 1)
    return results


def element_path(tree, element):
    """Slash separated chain of tags from document element down to element, qualified by name attribute"""

    parents = {child: parent for parent in tree.iter() for child in parent}
    tags = []
    node = element
    while node is not None:
        name = node.get('name')
        tags.append(f"{node.tag}[@name='{name}']" if name else node.tag)
        node = parents.get(node)
    return '/' + '/'.join(reversed(tags))


def round_up_to_kilobytes(byte_value):
    return (byte_value + 1023) // 1024
